"""
Error taxonomy for particle tracking.

Every error here is fatal for the particle (or the step) that raised it.
Nothing is retried: a silently corrupted particle would poison the
coupled physics without any visible symptom.
"""


class TrackingError(RuntimeError):
    """Base class for all tracking failures."""


class GeometricInconsistencyError(TrackingError):
    """The mesh collaborator could not locate or advance a particle."""


class InvalidParticleStateError(TrackingError, ValueError):
    """A particle field violates its physical invariant."""


class CodecError(TrackingError):
    """A migration or snapshot record does not decode to a valid particle."""


class BoundaryPolicyError(TrackingError):
    """A hit patch has no registered disposition."""
