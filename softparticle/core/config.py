"""
Run configuration loaded from YAML.

Example file:

    time_step: 1.0e-3
    max_track_iterations: 1000
    mesh:
      bounds_min: [0.0, 0.0, 0.0]
      bounds_max: [0.2, 0.05, 0.05]
      n_cells: [40, 10, 10]
      partitions: 4
      patch_types: {xmin: cyclic, xmax: cyclic}
    boundaries: {ymin: reflect, ymax: reflect, zmin: absorb, zmax: reflect}
    coupling:
      blend: averaged          # averaged | current | weight in [0, 1]
      ensemble_window: 20      # omit for a lifetime mean
      history_kernel: basset   # none | basset
      added_mass: true
    fluid:
      velocity: [0.1, 0.0, 0.0]
      density: 1000.0
      viscosity: 1.0e-3
"""

from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, confloat, conint, model_validator

PositiveCount = conint(strict=True, ge=1)
PositiveValue = confloat(strict=True, gt=0.0)
Vector = Tuple[StrictFloat, StrictFloat, StrictFloat]


class MeshConfig(BaseModel):
    """Box mesh cut into x-slabs."""

    model_config = ConfigDict(extra='forbid')

    bounds_min: Vector = (0.0, 0.0, 0.0)
    bounds_max: Vector = (1.0, 1.0, 1.0)
    n_cells: Tuple[PositiveCount, PositiveCount, PositiveCount] = (10, 10, 10)
    partitions: PositiveCount = Field(1, description="Number of x-slabs")
    patch_types: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode='after')
    def _check_box(self) -> 'MeshConfig':
        if any(hi <= lo for lo, hi in zip(self.bounds_min, self.bounds_max)):
            raise ValueError(f"Empty box: {self.bounds_min} .. {self.bounds_max}")
        if self.partitions > self.n_cells[0]:
            raise ValueError(f"Cannot cut {self.n_cells[0]} x-cells into "
                             f"{self.partitions} partitions")
        return self


class CouplingConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    blend: Union[Literal['averaged', 'current'], confloat(strict=True, ge=0.0, le=1.0)] = Field(
        'averaged', description="averaged, current or the weight of the current velocity",
    )
    ensemble_window: Optional[PositiveCount] = Field(
        None, description="Steps in the ensemble mean; None for a lifetime mean",
    )
    history_kernel: Literal['none', 'basset'] = 'none'
    added_mass: bool = Field(False, strict=True)


class FluidConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    velocity: Vector = (0.0, 0.0, 0.0)
    pressure: StrictFloat = 0.0
    density: PositiveValue = 1000.0
    viscosity: PositiveValue = 1e-3


class TrackingConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    time_step: PositiveValue = Field(1e-3, description="Time step [s]")
    max_track_iterations: PositiveCount = 1000
    max_exchange_rounds: PositiveCount = 100
    mesh: MeshConfig = Field(default_factory=MeshConfig)
    boundaries: Dict[str, str] = Field(default_factory=dict)
    coupling: CouplingConfig = Field(default_factory=CouplingConfig)
    fluid: FluidConfig = Field(default_factory=FluidConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TrackingConfig':
        return cls.model_validate(data or {})


def load_config(path: Union[str, Path]) -> TrackingConfig:
    """Read a TrackingConfig from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path, 'r') as f:
        return TrackingConfig.from_dict(yaml.safe_load(f))


def build_coupler(config: CouplingConfig):
    from softparticle.coupling.coupler import EnsembleCoupler
    from softparticle.physics.models import (
        AddedMass, BassetHistoryKernel, LinearBlend, NullHistoryKernel, StokesDrag,
    )

    if config.blend == 'averaged':
        blend = LinearBlend.averaged()
    elif config.blend == 'current':
        blend = LinearBlend.current()
    else:
        blend = LinearBlend(float(config.blend))

    kernels = {'none': NullHistoryKernel, 'basset': BassetHistoryKernel}

    forces = [StokesDrag()]
    if config.added_mass:
        forces.append(AddedMass())

    return EnsembleCoupler(blend=blend, ensemble_window=config.ensemble_window,
                           history_kernel=kernels[config.history_kernel](), forces=forces)


def build_fluid(config: FluidConfig):
    from softparticle.physics.fluid import UniformFluid
    return UniformFluid(config.velocity, config.pressure, config.density, config.viscosity)


def build_simulation(config: TrackingConfig):
    """Decomposed box mesh, coupler and driver described by config."""
    from softparticle.mesh.box import BoxMesh
    from softparticle.transport.engine import CoupledSimulation

    mesh = BoxMesh(config.mesh.bounds_min, config.mesh.bounds_max, config.mesh.n_cells,
                   patch_types=config.mesh.patch_types)
    return CoupledSimulation(
        mesh.decompose(config.mesh.partitions),
        config.boundaries,
        dt=config.time_step,
        coupler=build_coupler(config.coupling),
        max_iterations=config.max_track_iterations,
        max_exchange_rounds=config.max_exchange_rounds,
    )
