"""
What happens when a particle reaches a boundary face.

Dispatch is on the patch's BoundaryKind:
    PROCESSOR: the particle is encoded and queued for the neighbouring
               partition; it stops advancing here.
    PATCH:     the disposition registered for the patch name decides
               (reflect, absorb, periodic). A patch without one is a
               configuration error.
"""

import logging
import numpy as np
from abc import ABC, abstractmethod
from scipy.spatial.transform import Rotation
from typing import Dict, Optional, Sequence, Tuple, Union

from softparticle.core.errors import BoundaryPolicyError
from softparticle.core.particle import ParticleState, VELOCITY_FIELDS
from softparticle.mesh.base import BoundaryKind, FaceHit, Mesh, Patch
from softparticle.transport.integrator import TrackingContext, TrackStatus

logger = logging.getLogger(__name__)


# ============================================================================
# Property transforms
# ============================================================================

def rotation_tensor(axis: Sequence[float], angle: float) -> np.ndarray:
    """3x3 rotation by `angle` [rad] about `axis`."""
    axis = np.asarray(axis, dtype=np.float64)
    norm = np.linalg.norm(axis)
    if norm < 1e-12:
        raise ValueError("Rotation axis must be non-zero")
    return Rotation.from_rotvec(axis / norm * angle).as_matrix()


def transform_properties(state: ParticleState, transform):
    """
    Transform the particle's physical properties across a coupled patch.

    A 3x3 tensor rotates every velocity-bearing field and the previous
    position. A 3-vector is a translational separation: velocities are
    unchanged and only the previous position is shifted. Scalars
    (diameter, mass, density, history_steps) are never touched.
    """
    transform = np.asarray(transform, dtype=np.float64)

    if transform.shape == (3, 3):
        for name in VELOCITY_FIELDS:
            setattr(state, name, transform @ getattr(state, name))
        state.position_previous = transform @ state.position_previous
    elif transform.shape == (3,):
        state.position_previous = state.position_previous + transform
    else:
        raise ValueError(f"Expected a 3x3 tensor or 3-vector, got shape {transform.shape}")


def _cross_coupled_patch(state: ParticleState, patch: Patch):
    """Move position and properties through a periodic patch transform."""
    if patch.rotation is not None:
        state.position = patch.rotation @ state.position
        transform_properties(state, patch.rotation)
    if patch.separation is not None:
        state.position = state.position + patch.separation
        transform_properties(state, patch.separation)


# ============================================================================
# Physical patch dispositions
# ============================================================================

class PatchPolicy(ABC):
    """Disposition for a physical patch."""

    name = ''

    @abstractmethod
    def apply(self, state: ParticleState, hit: FaceHit, patch: Patch,
              ctx: TrackingContext) -> TrackStatus:
        """Act on the particle sitting on the hit face."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class ReflectPolicy(PatchPolicy):
    """Specular reflection of the advection velocity."""

    name = 'reflect'

    def apply(self, state, hit, patch, ctx):
        u = state.velocity_advection
        n = hit.normal
        state.velocity_advection = u - 2.0 * np.dot(u, n) * n
        return TrackStatus.CONTINUE


class AbsorbPolicy(PatchPolicy):
    """Remove the particle from the simulation."""

    name = 'absorb'

    def apply(self, state, hit, patch, ctx):
        state.alive = False
        logger.debug("Particle %d absorbed by patch '%s'", state.global_id, patch.name)
        return TrackStatus.REMOVED


class PeriodicPolicy(PatchPolicy):
    """Pass through to the coupled patch, transforming properties."""

    name = 'periodic'

    def apply(self, state, hit, patch, ctx):
        if not patch.is_coupled or hit.neighbour < 0:
            raise BoundaryPolicyError(
                f"Patch '{patch.name}' is not coupled; it cannot be periodic"
            )
        _cross_coupled_patch(state, patch)
        state.cell = hit.neighbour
        return TrackStatus.CONTINUE


POLICIES = {
    'reflect': ReflectPolicy,
    'absorb': AbsorbPolicy,
    'escape': AbsorbPolicy,
    'periodic': PeriodicPolicy,
}


# ============================================================================
# Handler
# ============================================================================

class BoundaryInteractionHandler:
    """
    Boundary dispatch for one partition.

    Usage:
        handler = BoundaryInteractionHandler({'xmin': 'absorb', 'ymin': 'reflect'})
        handler.validate(mesh)
    """

    def __init__(self, dispositions: Optional[Dict[str, Union[str, PatchPolicy]]] = None):
        self._policies: Dict[str, PatchPolicy] = {}
        for patch_name, policy in (dispositions or {}).items():
            self.register(patch_name, policy)

    def register(self, patch_name: str, policy: Union[str, PatchPolicy]):
        """Attach a disposition (name or PatchPolicy instance) to a patch."""
        if isinstance(policy, str):
            key = policy.lower()
            if key not in POLICIES:
                raise BoundaryPolicyError(
                    f"Unknown disposition '{policy}' for patch '{patch_name}'. "
                    f"Available: {list(POLICIES)}"
                )
            policy = POLICIES[key]()
        self._policies[patch_name] = policy

    @property
    def dispositions(self) -> Dict[str, PatchPolicy]:
        return dict(self._policies)

    def policy_for(self, patch: Patch) -> PatchPolicy:
        try:
            return self._policies[patch.name]
        except KeyError:
            raise BoundaryPolicyError(
                f"No disposition registered for patch '{patch.name}' "
                f"(type {patch.patch_type})"
            ) from None

    def validate(self, mesh: Mesh):
        """Fail now if any physical patch of mesh lacks a disposition."""
        for patch in mesh.patches:
            if patch.kind is BoundaryKind.PATCH:
                policy = self.policy_for(patch)
                if isinstance(policy, PeriodicPolicy) and not patch.is_coupled:
                    raise BoundaryPolicyError(
                        f"Patch '{patch.name}' is not coupled; it cannot be periodic"
                    )

    def hit_patch(self, state: ParticleState, hit: FaceHit, ctx: TrackingContext,
                  patch_index: int, track_fraction: float,
                  face_indices: Tuple[int, int]) -> TrackStatus:
        """
        Handle a particle sitting on boundary face `hit.face`.

        Parameters:
            state: Particle, already moved onto the face
            hit: Face intersection from the mesh
            ctx: Tracking context of the current partition
            patch_index: Patch holding the face
            track_fraction: Step fraction consumed when the face was hit
            face_indices: (cell, local face) of the hit

        Returns:
            TrackStatus.CONTINUE to keep advancing on this partition
        """
        patch = ctx.mesh.patch(patch_index)

        if patch.kind is BoundaryKind.PROCESSOR:
            return self.hit_processor_patch(state, hit, patch, ctx)

        logger.debug("Particle %d on patch '%s' face %s at f=%.6g",
                     state.global_id, patch.name, face_indices, track_fraction)
        return self.policy_for(patch).apply(state, hit, patch, ctx)

    def hit_processor_patch(self, state: ParticleState, hit: FaceHit, patch: Patch,
                            ctx: TrackingContext) -> TrackStatus:
        """Encode the particle for the neighbouring partition."""
        if hit.neighbour < 0 or patch.neighbour_partition < 0:
            raise BoundaryPolicyError(
                f"Processor patch '{patch.name}' has no neighbour for face {hit.face}"
            )

        _cross_coupled_patch(state, patch)
        state.cell = hit.neighbour

        ctx.send(patch.neighbour_partition, ctx.codec.encode(state))
        logger.debug("Particle %d migrating %d -> %d at f=%.6g", state.global_id,
                     ctx.partition, patch.neighbour_partition, state.step_fraction)
        return TrackStatus.MIGRATED
