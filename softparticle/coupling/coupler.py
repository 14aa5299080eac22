"""
Ensemble coupling between tracked particles, the fluid and the DEM feed.

Synchronisation points within a step:
    before_advection: build velocity_advection from the DEM velocities
    after_advection:  update ensemble velocity and history accumulators,
                      compute the fluid force, roll the step snapshot
    package_feedback: gather forces for the DEM feed and momentum sources
                      for the fluid solver
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from softparticle.core.errors import TrackingError
from softparticle.core.particle import ParticleState
from softparticle.mesh.base import Mesh
from softparticle.physics.fluid import FluidField
from softparticle.physics.models import (
    ForceModel, HistoryKernel, LinearBlend, NullHistoryKernel, StokesDrag, VelocityBlend,
)


@dataclass(eq=False)
class CouplingFeedback:
    """Per-particle data for the DEM feed and per-cell data for the fluid."""
    global_id: np.ndarray          # (N,)
    dem_partition: np.ndarray      # (N,) DEM rank to route each row to
    force: np.ndarray              # (N, 3) fluid force on each particle [N]
    velocity_ensemble: np.ndarray  # (N, 3) [m/s]
    momentum_source: np.ndarray    # (n_cells, 3) force density on the fluid [N/m³]
    removed: np.ndarray = field(   # (M,) ids absorbed at a boundary this step
        default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __len__(self) -> int:
        return len(self.global_id)

    def by_dem_partition(self) -> Dict[int, Dict[str, np.ndarray]]:
        """Split the per-particle rows by the DEM rank that owns them."""
        groups = {}
        for rank in np.unique(self.dem_partition):
            mask = self.dem_partition == rank
            groups[int(rank)] = {
                'global_id': self.global_id[mask],
                'force': self.force[mask],
                'velocity_ensemble': self.velocity_ensemble[mask],
            }
        return groups

    @classmethod
    def merge(cls, parts: Sequence['CouplingFeedback']) -> 'CouplingFeedback':
        """Combine partition feedbacks; momentum sources add cell-wise."""
        if not parts:
            raise ValueError("Nothing to merge")
        return cls(
            global_id=np.concatenate([p.global_id for p in parts]),
            dem_partition=np.concatenate([p.dem_partition for p in parts]),
            force=np.concatenate([p.force for p in parts]),
            velocity_ensemble=np.concatenate([p.velocity_ensemble for p in parts]),
            momentum_source=np.sum([p.momentum_source for p in parts], axis=0),
            removed=np.concatenate([p.removed for p in parts]),
        )


class EnsembleCoupler:
    """
    Parameters:
        blend: Advection velocity rule (default: average of current and previous)
        ensemble_window: Steps in the ensemble running mean; None for lifetime mean
        history_kernel: History-force model (default: none)
        forces: Instantaneous force models (default: Stokes drag)
    """

    def __init__(self, blend: Optional[VelocityBlend] = None,
                 ensemble_window: Optional[int] = None,
                 history_kernel: Optional[HistoryKernel] = None,
                 forces: Optional[Sequence[ForceModel]] = None):
        if ensemble_window is not None and ensemble_window < 1:
            raise ValueError(f"ensemble_window must be >= 1, got {ensemble_window}")

        self.blend = blend or LinearBlend.averaged()
        self.ensemble_window = ensemble_window
        self.history_kernel = history_kernel or NullHistoryKernel()
        self.forces = list(forces) if forces is not None else [StokesDrag()]

    def before_advection(self, state: ParticleState):
        """Set velocity_advection for the coming step."""
        # No previous velocity before the first completed step
        previous = state.velocity_previous if state.history_steps > 0 else state.velocity_external
        state.velocity_advection = self.blend(state.velocity_external, previous)

    def after_advection(self, state: ParticleState, fluid: FluidField, dt: float) -> np.ndarray:
        """
        Close the step for a particle that has finished moving.

        Returns:
            Total fluid force on the particle [N]
        """
        if state.step_fraction < 1.0:
            raise TrackingError(
                f"Particle {state.global_id} has not finished its step "
                f"(step_fraction={state.step_fraction:.6g})"
            )

        sample = fluid.sample(state.position, state.cell)

        # Running mean, turning into an exponential average past the window
        n_samples = state.history_steps + 1.0
        if self.ensemble_window is not None:
            n_samples = min(n_samples, float(self.ensemble_window))
        ensemble = np.asarray(state.velocity_ensemble)
        state.velocity_ensemble = ensemble + (np.asarray(state.velocity_external) - ensemble) / n_samples

        force = np.zeros(3)
        for model in self.forces:
            force += model.force(state, sample, fluid, dt)

        state.accumulate_history(self.history_kernel.contribution(state, sample, dt))
        force += self.history_kernel.force(state, fluid, dt)

        state.commit_step()
        return force

    @staticmethod
    def package_feedback(states: Sequence[ParticleState], forces: Sequence[np.ndarray],
                         mesh: Mesh, removed: Sequence[int] = ()) -> CouplingFeedback:
        """
        Gather one partition's step results.

        The fluid receives the reaction of each particle force, spread over
        the particle's cell volume. `removed` lists the particles absorbed
        at a boundary, which the DEM side has to drop as well.
        """
        if len(states) != len(forces):
            raise ValueError(f"{len(states)} particles but {len(forces)} forces")

        n = len(states)
        force = np.asarray(forces, dtype=np.float64).reshape(n, 3)
        source = np.zeros((mesh.n_cells, 3))

        if n:
            cells = np.array([s.cell for s in states], dtype=np.int64)
            volumes = np.array([mesh.cell_volume(c) for c in cells])
            np.add.at(source, cells, -force / volumes[:, None])

        return CouplingFeedback(
            global_id=np.array([s.global_id for s in states], dtype=np.int64),
            dem_partition=np.array([s.dem_partition for s in states], dtype=np.int64),
            force=force,
            velocity_ensemble=np.array([s.velocity_ensemble for s in states]).reshape(n, 3),
            momentum_source=source,
            removed=np.asarray(removed, dtype=np.int64).reshape(-1),
        )
