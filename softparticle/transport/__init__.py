"""Transport module: motion through the mesh, boundaries, migration and the driver."""

from softparticle.transport.integrator import (
    MotionIntegrator, TrackingContext, TrackResult, TrackStatus,
)
from softparticle.transport.boundary import (
    BoundaryInteractionHandler, transform_properties, rotation_tensor,
)
from softparticle.transport.codec import DomainMigrationCodec
from softparticle.transport.exchange import LocalTransport, Transport
from softparticle.transport.engine import CoupledSimulation, PartitionTracker

__all__ = [
    "MotionIntegrator",
    "TrackingContext",
    "TrackResult",
    "TrackStatus",
    "BoundaryInteractionHandler",
    "transform_properties",
    "rotation_tensor",
    "DomainMigrationCodec",
    "LocalTransport",
    "Transport",
    "CoupledSimulation",
    "PartitionTracker",
]
