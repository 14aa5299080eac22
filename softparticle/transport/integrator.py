"""
Face-to-face particle motion through a mesh partition.

A step's displacement is velocity_advection * dt. The integrator walks the
particle cell by cell, stopping at every face it crosses. Each crossing
consumes part of the step (step_fraction), and boundary faces are handed to
the BoundaryInteractionHandler in the tracking context, which decides
whether the particle keeps moving on this partition.
"""

import enum
import logging
import numpy as np
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Tuple

from softparticle.core.errors import GeometricInconsistencyError, TrackingError
from softparticle.core.particle import ParticleState
from softparticle.mesh.base import Mesh

if TYPE_CHECKING:
    from softparticle.transport.boundary import BoundaryInteractionHandler
    from softparticle.transport.codec import DomainMigrationCodec

logger = logging.getLogger(__name__)


class TrackStatus(enum.Enum):
    CONTINUE = 'continue'      # keep advancing on this partition
    COMPLETED = 'completed'    # step fully consumed
    MIGRATED = 'migrated'      # handed to a neighbouring partition
    REMOVED = 'removed'        # absorbed by a boundary


@dataclass
class TrackingContext:
    """
    Everything a tracking call needs besides the particle itself.

    One context per partition; the outbox collects encoded records per
    destination partition until the owner drains it.
    """
    mesh: Mesh
    dt: float
    handler: 'BoundaryInteractionHandler'
    codec: 'DomainMigrationCodec'
    max_iterations: int = 1000
    outbox: Dict[int, List[bytes]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.dt > 0.0:
            raise ValueError(f"Time step must be positive, got {self.dt}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")

    @property
    def partition(self) -> int:
        return self.mesh.partition

    def send(self, partition: int, record: bytes):
        """Queue an encoded particle for another partition."""
        if partition == self.partition:
            raise GeometricInconsistencyError(
                f"Partition {partition} tried to migrate a particle to itself"
            )
        self.outbox.setdefault(partition, []).append(record)

    def drain_outbox(self) -> Dict[int, bytes]:
        """Return one bulk block per destination and empty the outbox."""
        blocks = {p: b''.join(records) for p, records in self.outbox.items() if records}
        self.outbox.clear()
        return blocks


@dataclass
class TrackResult:
    """Outcome of one advance() call."""
    status: TrackStatus
    displacement: np.ndarray                 # sum of committed partial moves
    crossings: List[Tuple[int, float]]       # (face, step_fraction) per hit
    iterations: int


class MotionIntegrator:
    """
    Advance particles through the mesh for one time step.

    Parameters:
        small: Remaining displacements shorter than this are treated as zero [m]
    """

    def __init__(self, small: float = 1e-12):
        self.small = small

    @staticmethod
    def start_step(state: ParticleState):
        """Reset the step bookkeeping at the beginning of a new time step."""
        state.step_fraction = 0.0

    @staticmethod
    def locate(state: ParticleState, mesh: Mesh):
        """Make sure state.cell is an owned cell of mesh."""
        if mesh.owns(state.cell):
            return
        cell = mesh.find_cell(state.position)
        if cell < 0:
            raise GeometricInconsistencyError(
                f"Particle {state.global_id} at {state.position} is outside "
                f"partition {mesh.partition}"
            )
        state.cell = cell

    def advance(self, state: ParticleState, ctx: TrackingContext) -> TrackResult:
        """
        Move a particle through the rest of its current step.

        Resumes from state.step_fraction, so a particle decoded on a new
        partition finishes exactly the part of the step left over.

        Returns:
            TrackResult; the particle is in its final state for this
            partition (completed, migrated or removed)
        """
        if not state.alive:
            raise TrackingError(f"Particle {state.global_id} was removed and cannot be tracked")

        self.locate(state, ctx.mesh)

        displacement = np.zeros(3)
        crossings: List[Tuple[int, float]] = []
        status = TrackStatus.COMPLETED
        iterations = 0

        while state.step_fraction < 1.0:
            iterations += 1
            if iterations > ctx.max_iterations:
                raise GeometricInconsistencyError(
                    f"Particle {state.global_id} exceeded {ctx.max_iterations} face "
                    f"crossings in one step (cell {state.cell}, "
                    f"step_fraction {state.step_fraction:.6g})"
                )

            # Velocity may change at a boundary (reflection), so recompute
            remaining = (1.0 - state.step_fraction) * ctx.dt * state.velocity_advection
            if np.dot(remaining, remaining) <= self.small**2:
                state.step_fraction = 1.0
                break

            start = np.array(state.position)
            hit = ctx.mesh.track_segment(state.cell, start, start + remaining)

            if hit is None:
                state.position = start + remaining
                displacement += remaining
                state.step_fraction = 1.0
                break

            fraction = min(max(hit.fraction, 0.0), 1.0)
            state.position = hit.position
            displacement += hit.position - start
            state.step_fraction = min(1.0, state.step_fraction +
                                      fraction * (1.0 - state.step_fraction))
            crossings.append((hit.face, state.step_fraction))

            if hit.internal:
                if hit.neighbour < 0:
                    raise GeometricInconsistencyError(
                        f"Internal face {hit.face} of cell {state.cell} has no neighbour"
                    )
                state.cell = hit.neighbour
                continue

            logger.debug("Particle %d hit patch %d at face %d (f=%.6g)",
                         state.global_id, hit.patch, hit.face, state.step_fraction)

            outcome = ctx.handler.hit_patch(state, hit, ctx, hit.patch,
                                            state.step_fraction, hit.face_indices)
            if outcome is not TrackStatus.CONTINUE:
                status = outcome
                break

        return TrackResult(status=status, displacement=displacement,
                           crossings=crossings, iterations=iterations)
