"""YAML configuration and the builders."""

from pathlib import Path

import pytest
import yaml

from softparticle.core.config import (
    CouplingConfig, TrackingConfig, build_coupler, build_fluid, build_simulation, load_config,
)
from softparticle.physics.models import AddedMass, BassetHistoryKernel, NullHistoryKernel


CHANNEL = Path(__file__).resolve().parents[1] / 'examples' / 'config' / 'channel.yaml'


def test_load_example_config():
    config = load_config(CHANNEL)

    assert config.time_step == pytest.approx(2e-3)
    assert config.mesh.partitions == 4
    assert config.boundaries['zmin'] == 'absorb'
    assert config.coupling.history_kernel == 'basset'


def test_build_simulation_from_example():
    config = load_config(CHANNEL)
    sim = build_simulation(config)

    assert len(sim.trackers) == 4
    assert sim.dt == pytest.approx(2e-3)
    assert sim.coupler.ensemble_window == 20
    assert isinstance(sim.coupler.history_kernel, BassetHistoryKernel)
    assert any(isinstance(f, AddedMass) for f in sim.coupler.forces)

    fluid = build_fluid(config.fluid)
    assert fluid.velocity.tolist() == [0.2, 0.0, 0.0]


def test_defaults():
    config = TrackingConfig.from_dict({})
    coupler = build_coupler(config.coupling)
    assert coupler.blend.weight == 0.5
    assert isinstance(coupler.history_kernel, NullHistoryKernel)
    assert config.mesh.partitions == 1


def test_quoted_values_are_rejected(tmp_path):
    path = tmp_path / 'run.yaml'
    path.write_text(yaml.safe_dump({'time_step': '1e-3'}))
    with pytest.raises(ValueError):
        load_config(path)

    with pytest.raises(ValueError):
        TrackingConfig.from_dict({'coupling': {'added_mass': 'false'},
                                  'max_exchange_rounds': '5'})


@pytest.mark.parametrize("blend, weight", [('current', 1.0), ('averaged', 0.5), (0.25, 0.25)])
def test_blend_choices(blend, weight):
    assert build_coupler(CouplingConfig(blend=blend)).blend.weight == weight


@pytest.mark.parametrize("data", [
    {'timestep': 1e-3},
    {'mesh': {'cells': [1, 1, 1]}},
    {'mesh': {'bounds_min': [1.0, 0.0, 0.0], 'bounds_max': [0.5, 1.0, 1.0]}},
    {'mesh': {'n_cells': [2, 1, 1], 'partitions': 3}},
    {'time_step': -1.0},
    {'max_track_iterations': 0},
    {'fluid': {'viscosity': 0.0}},
])
def test_invalid_config(data):
    with pytest.raises(ValueError):
        TrackingConfig.from_dict(data)


@pytest.mark.parametrize("coupling", [
    {'blend': 'newest'},
    {'blend': True},
    {'blend': 1.5},
    {'ensemble_window': 0},
    {'history_kernel': 'maxey-riley'},
    {'added_mass': 1},
])
def test_invalid_coupling(coupling):
    with pytest.raises(ValueError):
        CouplingConfig(**coupling)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / 'nope.yaml')
