"""
Fluid-phase samples at particle locations.

The fluid solver is external; the coupler only needs read-only samples of
velocity and pressure by (position, cell), plus the fluid's density and
viscosity for the force models.
"""

import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence


@dataclass(frozen=True, eq=False)
class FluidSample:
    velocity: np.ndarray   # [m/s]
    pressure: float = 0.0  # [Pa]


class FluidField(ABC):
    """Read-only view of the fluid solution."""

    density: float     # [kg/m³]
    viscosity: float   # dynamic [Pa s]

    @abstractmethod
    def sample(self, position: Sequence[float], cell: int) -> FluidSample:
        """Fluid state seen by a particle at `position` in `cell`."""


class UniformFluid(FluidField):
    """Same velocity and pressure everywhere."""

    def __init__(self, velocity: Sequence[float] = (0.0, 0.0, 0.0), pressure: float = 0.0,
                 density: float = 1000.0, viscosity: float = 1e-3):
        self.velocity = np.asarray(velocity, dtype=np.float64)
        self.pressure = float(pressure)
        self.density = float(density)
        self.viscosity = float(viscosity)

        if self.velocity.shape != (3,):
            raise ValueError(f"Fluid velocity must have 3 components, got {self.velocity.shape}")
        if self.density <= 0.0 or self.viscosity <= 0.0:
            raise ValueError("Fluid density and viscosity must be positive")

    def sample(self, position, cell):
        return FluidSample(velocity=self.velocity.copy(), pressure=self.pressure)


class CellFluid(FluidField):
    """Cell-centred fields, sampled at the particle's cell (no interpolation)."""

    def __init__(self, velocity: np.ndarray, pressure: np.ndarray,
                 density: float = 1000.0, viscosity: float = 1e-3):
        self.velocity = np.asarray(velocity, dtype=np.float64)
        self.pressure = np.asarray(pressure, dtype=np.float64)
        self.density = float(density)
        self.viscosity = float(viscosity)

        if self.velocity.ndim != 2 or self.velocity.shape[1] != 3:
            raise ValueError(f"Cell velocity must be (n_cells, 3), got {self.velocity.shape}")
        if self.pressure.shape != (self.velocity.shape[0],):
            raise ValueError("Cell pressure must have one value per cell")

    def sample(self, position, cell):
        return FluidSample(velocity=self.velocity[cell].copy(),
                           pressure=float(self.pressure[cell]))
