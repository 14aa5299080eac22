import numpy as np
import pytest

from softparticle.core.particle import ParticleState
from softparticle.mesh.box import BoxMesh, SIDES
from softparticle.transport.boundary import BoundaryInteractionHandler
from softparticle.transport.codec import DomainMigrationCodec
from softparticle.transport.integrator import TrackingContext


def make_particle(position=(0.5, 0.5, 0.5), velocity=(1.0, 0.0, 0.0),
                  diameter=0.002, density=1000.0, global_id=1, **kwargs):
    return ParticleState(position=position, diameter=diameter, velocity=velocity,
                         density=density, global_id=global_id, **kwargs)


def make_context(mesh, dispositions=None, dt=1.0, max_iterations=1000):
    if dispositions is None:
        dispositions = {side: 'reflect' for side in SIDES}
    return TrackingContext(mesh=mesh, dt=dt,
                           handler=BoundaryInteractionHandler(dispositions),
                           codec=DomainMigrationCodec(),
                           max_iterations=max_iterations)


@pytest.fixture
def particle():
    return make_particle()


@pytest.fixture
def unit_box():
    """Unit cube, 4 cells per direction, one partition."""
    return BoxMesh((0.0, 0.0, 0.0), (1.0, 1.0, 1.0), (4, 4, 4))


@pytest.fixture
def two_slabs():
    """[0, 2] x [0, 1] x [0, 1], one cell per slab."""
    return BoxMesh((0.0, 0.0, 0.0), (2.0, 1.0, 1.0), (2, 1, 1)).decompose(2)


@pytest.fixture
def rng():
    return np.random.default_rng(12345)
