"""
softparticle: Lagrangian tracking of DEM-coupled soft particles

Tracks point particles face by face through a decomposed volumetric mesh,
migrating them between partitions, while exchanging velocities and forces
with an external discrete-element solver.

Modules:
    core: Particle state, clouds, errors, configuration
    mesh: Mesh interface and reference box mesh
    transport: Motion integrator, boundary handling, migration codec, driver
    physics: Fluid samples, blend / history / force models
    coupling: DEM feed and ensemble coupler
"""

__version__ = "0.1.0"

from softparticle.core.particle import ParticleState
from softparticle.core.cloud import ParticleCloud
from softparticle.mesh.box import BoxMesh
from softparticle.transport.integrator import MotionIntegrator
from softparticle.transport.boundary import BoundaryInteractionHandler
from softparticle.transport.codec import DomainMigrationCodec
from softparticle.transport.engine import CoupledSimulation
from softparticle.coupling.coupler import EnsembleCoupler
from softparticle.coupling.feed import DEMFeed

__all__ = [
    "ParticleState",
    "ParticleCloud",
    "BoxMesh",
    "MotionIntegrator",
    "BoundaryInteractionHandler",
    "DomainMigrationCodec",
    "CoupledSimulation",
    "EnsembleCoupler",
    "DEMFeed",
]
