"""Partition trackers, migration rounds and the coupled driver."""

import logging

import numpy as np
import pytest

from softparticle.core.errors import BoundaryPolicyError, GeometricInconsistencyError
from softparticle.coupling.coupler import EnsembleCoupler
from softparticle.coupling.feed import DEMFeed
from softparticle.mesh.box import BoxMesh, SIDES
from softparticle.physics.fluid import UniformFluid
from softparticle.physics.models import LinearBlend
from softparticle.transport.boundary import BoundaryInteractionHandler
from softparticle.transport.codec import DomainMigrationCodec
from softparticle.transport.engine import CoupledSimulation, PartitionTracker
from softparticle.transport.exchange import LocalTransport

from tests.conftest import make_particle


LENGTH = 3.0
REFLECT_YZ = {side: 'reflect' for side in SIDES if side not in ('xmin', 'xmax')}


def _channel(n_partitions=3, **kwargs):
    mesh = BoxMesh((0.0, 0.0, 0.0), (LENGTH, 1.0, 1.0), (12, 2, 2),
                   patch_types={'xmin': 'cyclic', 'xmax': 'cyclic'})
    return CoupledSimulation(mesh.decompose(n_partitions), REFLECT_YZ, dt=1.0, **kwargs)


def _populate(sim, rng, n=60, speed=2.0):
    start = {}
    for gid in range(n):
        position = rng.uniform((0.01, 0.05, 0.05), (LENGTH - 0.01, 0.95, 0.95))
        velocity = (rng.uniform(-speed, speed), 0.0, 0.0)
        sim.add_particle(make_particle(position=position, velocity=velocity, global_id=gid))
        start[gid] = (position, velocity[0])
    return start


def _circular_distance(a, b):
    d = np.mod(a - b, LENGTH)
    return min(d, LENGTH - d)


def test_particle_crossing_processor_face(two_slabs):
    left_mesh, right_mesh = two_slabs
    codec = DomainMigrationCodec()
    handler = BoundaryInteractionHandler({side: 'reflect' for side in SIDES})
    left = PartitionTracker(left_mesh, handler, codec, dt=1.0)
    right = PartitionTracker(right_mesh, handler, codec, dt=1.0)
    coupler = EnsembleCoupler(LinearBlend.current())

    p = make_particle(position=(0.5, 0.5, 0.5), velocity=(1.0, 0.0, 0.0), global_id=42)
    p.accumulate_history((1e-4, 2e-4, 3e-4))
    left.add_particle(p)
    left.start_step(coupler)

    blocks = left.track()

    assert list(blocks) == [1]
    assert len(blocks[1]) == codec.record_size
    assert len(left.cloud) == 0
    assert left.stats['migrated_out'] == 1
    assert left.results[42][0].crossings[0][1] == pytest.approx(0.5)

    record = codec.decode(blocks[1])
    assert record.global_id == 42
    np.testing.assert_array_equal(record.history_force_sum, (1e-4, 2e-4, 3e-4))
    assert record.step_fraction == pytest.approx(0.5)

    assert right.receive(blocks[1]) == {}
    arrived = right.cloud.get(42)
    np.testing.assert_allclose(arrived.position, (1.5, 0.5, 0.5))
    assert arrived.step_fraction == 1.0
    assert arrived.cell == 1
    assert right.stats['received'] == 1


def test_tracker_rejects_incomplete_dispositions(unit_box):
    with pytest.raises(BoundaryPolicyError):
        PartitionTracker(unit_box, BoundaryInteractionHandler({'xmin': 'reflect'}),
                         DomainMigrationCodec(), dt=1.0)


def test_migration_conserves_particles(rng):
    sim = _channel()
    start = _populate(sim, rng)

    feedback = sim.step(UniformFluid())

    assert sim.n_particles == len(start)
    assert len(feedback) == len(start)
    assert feedback.momentum_source.shape == (sim.trackers[0].mesh.n_cells, 3)

    received = sum(t.stats['received'] for t in sim.trackers)
    migrated = sum(t.stats['migrated_out'] for t in sim.trackers)
    assert migrated > 0
    assert received == migrated

    for gid, (position, vx) in start.items():
        owner = sim.owner_of(gid)
        assert owner is not None
        state = sim.trackers[owner].cloud.get(gid)
        assert state.step_fraction == 1.0
        assert _circular_distance(state.position[0], position[0] + vx) < 1e-9
        np.testing.assert_allclose(state.position[1:], position[1:])
        assert sim.trackers[owner].mesh.owns(state.cell)


def test_history_steps_after_many_steps(rng):
    sim = _channel()
    start = _populate(sim, rng, n=20)

    stats = sim.run(5, UniformFluid(), verbose=False)

    assert stats['n_particles'] == 20
    assert sim.step_count == 5
    assert sim.time == pytest.approx(5.0)
    for state in sim.particles():
        assert state.history_steps == 5.0
        position, vx = start[state.global_id]
        assert _circular_distance(state.position[0], position[0] + 5.0 * vx) < 1e-8


def test_run_reports_progress(rng, capsys):
    sim = _channel()
    _populate(sim, rng, n=5)
    sim.run(2, UniformFluid(), verbose=True)
    assert "Tracking complete!" in capsys.readouterr().out


def test_exchange_round_limit(rng):
    sim = _channel(max_exchange_rounds=1)
    sim.add_particle(make_particle(position=(2.5, 0.5, 0.5), velocity=(-2.0, 0.0, 0.0)))
    with pytest.raises(GeometricInconsistencyError):
        sim.step(UniformFluid())


def test_absorbed_particles_leave_the_simulation():
    mesh = BoxMesh((0.0, 0.0, 0.0), (2.0, 1.0, 1.0), (4, 2, 2))
    dispositions = {side: 'reflect' for side in SIDES}
    dispositions['zmin'] = 'absorb'
    sim = CoupledSimulation(mesh.decompose(2), dispositions, dt=1.0)
    sim.add_particle(make_particle(position=(1.5, 0.3, 0.7), velocity=(0.0, 0.0, -1.0)))

    feedback = sim.step(UniformFluid())

    assert sim.n_particles == 0
    assert len(feedback) == 0
    assert sum(t.stats['removed'] for t in sim.trackers) == 1


def test_add_particle_checks_ownership():
    sim = _channel()
    sim.add_particle(make_particle(position=(1.5, 0.5, 0.5), global_id=3))
    assert sim.owner_of(3) == 1

    with pytest.raises(ValueError):
        sim.add_particle(make_particle(position=(0.5, 0.5, 0.5), global_id=3))
    with pytest.raises(GeometricInconsistencyError):
        sim.add_particle(make_particle(position=(5.0, 0.5, 0.5), global_id=4))


def test_meshes_must_be_in_partition_order():
    meshes = BoxMesh((0.0, 0.0, 0.0), (2.0, 1.0, 1.0), (2, 1, 1)).decompose(2)
    with pytest.raises(ValueError):
        CoupledSimulation(meshes[::-1], {side: 'reflect' for side in SIDES}, dt=1.0)


def test_feed_is_applied_once_per_particle(caplog):
    sim = _channel()
    feed = DEMFeed(global_id=np.arange(4),
                   position=[(0.5, 0.5, 0.5), (1.5, 0.5, 0.5), (2.5, 0.5, 0.5), (9.0, 0.5, 0.5)],
                   diameter=0.002, velocity=np.zeros((4, 3)), density=2500.0,
                   dem_partition=[0, 0, 1, 1], type_tag=0)

    with caplog.at_level(logging.WARNING):
        counts = sim.apply_feed(feed)

    assert counts == {'created': 3, 'updated': 0, 'removed': 0}
    assert "outside the mesh" in caplog.text
    assert [sim.owner_of(i) for i in range(3)] == [0, 1, 2]

    counts = sim.apply_feed(feed)
    assert counts['created'] == 0
    assert counts['updated'] == 3
    assert sim.n_particles == 3


def test_feedback_routes_to_dem_partitions():
    sim = _channel()
    feed = DEMFeed(global_id=[10, 11, 12],
                   position=[(0.5, 0.5, 0.5), (1.5, 0.5, 0.5), (2.5, 0.5, 0.5)],
                   diameter=0.002, velocity=np.zeros((3, 3)), density=2500.0,
                   dem_partition=[1, 0, 1], type_tag=0)

    feedback = sim.step(UniformFluid((0.1, 0.0, 0.0)), feed)
    groups = feedback.by_dem_partition()

    assert sorted(groups[1]['global_id'].tolist()) == [10, 12]
    assert groups[0]['global_id'].tolist() == [11]
    assert np.all(groups[0]['force'][:, 0] > 0.0)


def test_snapshot_round_trip(rng, tmp_path):
    sim = _channel()
    _populate(sim, rng, n=15)
    sim.run(2, UniformFluid(), verbose=False)
    path = tmp_path / 'sim.h5'
    sim.write_snapshot(path)

    restored = _channel()
    restored.read_snapshot(path)

    assert restored.step_count == 2
    assert restored.time == pytest.approx(2.0)
    assert restored.get_statistics()['per_partition'] == sim.get_statistics()['per_partition']
    for state in sim.particles():
        owner = restored.owner_of(state.global_id)
        assert restored.trackers[owner].cloud.get(state.global_id) == state

    with pytest.raises(ValueError):
        _channel(n_partitions=2).read_snapshot(path)


def test_local_transport():
    transport = LocalTransport(2)
    transport.send(0, 1, b'')
    assert not transport.pending()

    transport.send(0, 1, b'abc')
    transport.send(1, 1, b'de')
    assert transport.pending()
    assert transport.receive(1) == [(0, b'abc'), (1, b'de')]
    assert transport.receive(1) == []
    assert (transport.n_messages, transport.n_bytes) == (2, 5)

    with pytest.raises(ValueError):
        transport.send(0, 2, b'x')
    with pytest.raises(ValueError):
        LocalTransport(0)


def test_absorbed_particles_are_not_fed_back_in(caplog, tmp_path):
    mesh = BoxMesh((0.0, 0.0, 0.0), (2.0, 1.0, 1.0), (4, 2, 2))
    dispositions = {side: 'reflect' for side in SIDES}
    dispositions['zmin'] = 'absorb'
    sim = CoupledSimulation(mesh.decompose(2), dispositions, dt=1.0)
    feed = DEMFeed(global_id=[7], position=[(1.5, 0.3, 0.7)], diameter=0.002,
                   velocity=[(0.0, 0.0, -1.0)], density=2500.0, dem_partition=0, type_tag=0)

    feedback = sim.step(UniformFluid(), feed)

    assert sim.n_particles == 0
    assert feedback.removed.tolist() == [7]
    assert sim.absorbed_ids == {7}

    # The DEM side has not caught up yet and still reports the particle
    with caplog.at_level(logging.WARNING):
        counts = sim.apply_feed(feed)
    assert counts == {'created': 0, 'updated': 0, 'removed': 0}
    assert sim.n_particles == 0
    assert "outside the mesh" not in caplog.text

    path = tmp_path / 'absorbed.h5'
    sim.write_snapshot(path)
    restored = CoupledSimulation(mesh.decompose(2), dispositions, dt=1.0)
    restored.read_snapshot(path)
    assert restored.absorbed_ids == {7}
    assert restored.apply_feed(feed)['created'] == 0


def test_add_particle_ignores_stale_cell():
    sim = _channel()
    p = make_particle(position=(2.5, 0.5, 0.5), global_id=9, cell=0)
    assert sim.trackers[0].mesh.owns(0)

    sim.add_particle(p)

    assert sim.owner_of(9) == 2
    assert p.cell == sim.trackers[2].mesh.find_cell((2.5, 0.5, 0.5))
    assert sim.trackers[0].cloud.get(9) is None


def test_dem_rank_follows_migration_and_feed(caplog):
    sim = _channel()
    feed = DEMFeed(global_id=[5], position=[(0.9, 0.5, 0.5)], diameter=0.002,
                   velocity=[(1.0, 0.0, 0.0)], density=2500.0, dem_partition=0, type_tag=0)

    feedback = sim.step(UniformFluid(), feed)
    assert sim.owner_of(5) == 1
    assert sim.trackers[1].cloud.get(5).dem_partition == 0
    assert list(feedback.by_dem_partition()) == [0]

    feed.dem_partition[:] = 2
    with caplog.at_level(logging.DEBUG, logger='softparticle.coupling.feed'):
        feedback = sim.step(UniformFluid(), feed)

    assert "moved DEM rank 0 -> 2" in caplog.text
    assert next(sim.particles()).dem_partition == 2
    assert feedback.by_dem_partition()[2]['global_id'].tolist() == [5]
