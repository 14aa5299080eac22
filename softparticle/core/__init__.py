"""Core module: particle state, clouds, errors and configuration."""

from softparticle.core.particle import ParticleState, PARTICLE_DTYPE, RECORD_VERSION
from softparticle.core.cloud import ParticleCloud
from softparticle.core.errors import (
    TrackingError,
    GeometricInconsistencyError,
    InvalidParticleStateError,
    CodecError,
    BoundaryPolicyError,
)

__all__ = [
    "ParticleState",
    "PARTICLE_DTYPE",
    "RECORD_VERSION",
    "ParticleCloud",
    "TrackingError",
    "GeometricInconsistencyError",
    "InvalidParticleStateError",
    "CodecError",
    "BoundaryPolicyError",
]
