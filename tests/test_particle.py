"""ParticleState invariants and bookkeeping."""

import numpy as np
import pytest

from softparticle.core.cloud import ParticleCloud
from softparticle.core.errors import InvalidParticleStateError, TrackingError
from softparticle.core.particle import PARTICLE_DTYPE, ParticleState

from tests.conftest import make_particle


@pytest.mark.parametrize("diameter, density", [
    (0.002, 1000.0),
    (1e-6, 2500.0),
    (0.35, 7.8),
])
def test_mass_follows_diameter_and_density(diameter, density):
    p = make_particle(diameter=diameter, density=density)
    assert p.mass == pytest.approx(density * np.pi / 6.0 * diameter**3, rel=1e-12)
    assert p.volume == pytest.approx(np.pi / 6.0 * diameter**3, rel=1e-12)


def test_fresh_particle_has_zero_history(particle):
    assert particle.history_steps == 0.0
    np.testing.assert_array_equal(particle.history_force_sum, np.zeros(3))
    np.testing.assert_array_equal(particle.position_previous, np.zeros(3))
    np.testing.assert_array_equal(particle.velocity_previous, np.zeros(3))
    np.testing.assert_array_equal(particle.velocity_ensemble, np.zeros(3))
    assert particle.step_fraction == 0.0
    assert particle.alive


@pytest.mark.parametrize("field, value", [
    ('diameter', 0.0),
    ('diameter', -1e-3),
    ('density', 0.0),
    ('density', float('nan')),
])
def test_invalid_construction_is_rejected(field, value):
    kwargs = {field: value}
    with pytest.raises(InvalidParticleStateError):
        make_particle(**kwargs)


def test_invalid_state_error_is_a_value_error():
    with pytest.raises(ValueError):
        make_particle(diameter=-1.0)


def test_setters_enforce_invariants(particle):
    with pytest.raises(InvalidParticleStateError):
        particle.diameter = 0.0
    with pytest.raises(InvalidParticleStateError):
        particle.mass = -2.0
    with pytest.raises(InvalidParticleStateError):
        particle.velocity_external = (1.0, 2.0)
    with pytest.raises(InvalidParticleStateError):
        particle.position = (np.inf, 0.0, 0.0)
    with pytest.raises(InvalidParticleStateError):
        particle.step_fraction = 1.5

    assert particle.diameter == 0.002


def test_diameter_update_rederives_mass(particle):
    particle.diameter = 0.004
    assert particle.mass == pytest.approx(1000.0 * np.pi / 6.0 * 0.004**3)


def test_mass_override(particle):
    particle.mass = 1.0
    assert particle.mass == 1.0


def test_vector_getters_are_read_only(particle):
    with pytest.raises(ValueError):
        particle.position[0] = 3.0
    with pytest.raises(ValueError):
        particle.history_force_sum[1] = 3.0
    assert particle.position[0] == 0.5


def test_history_steps_never_decrease(particle):
    particle.accumulate_history((1.0, 0.0, 0.0))
    particle.accumulate_history((0.5, 0.0, 0.0))
    assert particle.history_steps == 2.0
    np.testing.assert_allclose(particle.history_force_sum, (1.5, 0.0, 0.0))

    with pytest.raises(InvalidParticleStateError):
        particle.history_steps = 1.0


def test_commit_step_refuses_mid_step(particle):
    particle.step_fraction = 0.5
    with pytest.raises(TrackingError):
        particle.commit_step()
    np.testing.assert_array_equal(particle.position_previous, np.zeros(3))


def test_commit_step_rolls_snapshot(particle):
    particle.step_fraction = 1.0
    particle.commit_step()
    np.testing.assert_array_equal(particle.position_previous, particle.position)
    np.testing.assert_array_equal(particle.velocity_previous, particle.velocity_external)


def test_record_round_trip_and_clone(particle):
    particle.velocity_ensemble = (0.1, 0.2, 0.3)
    particle.accumulate_history((1e-3, -2e-3, 3e-3))
    particle.step_fraction = 0.25
    particle.cell = 7

    record = particle.to_record()
    assert record.dtype == PARTICLE_DTYPE
    assert ParticleState.from_record(record[0]) == particle

    copy = particle.clone()
    assert copy == particle
    copy.velocity_external = (9.0, 9.0, 9.0)
    assert copy != particle


def test_cloud_rejects_duplicate_ids():
    cloud = ParticleCloud([make_particle(global_id=1), make_particle(global_id=2)])
    with pytest.raises(InvalidParticleStateError):
        cloud.add(make_particle(global_id=2))
    assert len(cloud) == 2


def test_cloud_statistics_and_array():
    cloud = ParticleCloud([make_particle(global_id=i, diameter=0.001 * (i + 1))
                           for i in range(3)])
    stats = cloud.get_statistics()
    assert stats['n_total'] == 3
    assert stats['mean_diameter'] == pytest.approx(0.002)

    array = cloud.to_structured_array()
    assert array.dtype == PARTICLE_DTYPE
    again = ParticleCloud.from_structured_array(array)
    assert sorted(again.ids()) == [0, 1, 2]
    assert again.get(1) == cloud.get(1)
