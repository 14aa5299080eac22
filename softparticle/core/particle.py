"""
Particle state management for DEM-coupled Lagrangian tracking.

ParticleState is the per-particle record; PARTICLE_DTYPE is its
fixed-layout binary form, used for migration between partitions and
for snapshots so that whole clouds move as flat blocks.
"""

import numpy as np
from typing import Optional, Sequence

from softparticle.core.errors import InvalidParticleStateError, TrackingError


RECORD_VERSION = 1

# Fixed-width, little-endian, unaligned: identical bytes on every rank
PARTICLE_DTYPE = np.dtype([
    ('version', '<u4'),               # record layout version
    ('alive', '?'),                   # still being tracked?
    ('position', '<f8', 3),           # x, y, z [m]
    ('cell', '<i8'),                  # owning cell (global index)
    ('step_fraction', '<f8'),         # fraction of the time step consumed
    ('diameter', '<f8'),              # [m]
    ('mass', '<f8'),                  # [kg]
    ('density', '<f8'),               # [kg/m³]
    ('velocity_external', '<f8', 3),  # reported by the DEM feed [m/s]
    ('velocity_advection', '<f8', 3), # used to move the particle [m/s]
    ('velocity_ensemble', '<f8', 3),  # running ensemble average [m/s]
    ('position_previous', '<f8', 3),  # at the start of the step [m]
    ('velocity_previous', '<f8', 3),  # at the start of the step [m/s]
    ('global_id', '<i8'),             # DEM particle tag
    ('dem_partition', '<i8'),         # last DEM rank that reported it
    ('type_tag', '<i8'),              # particle class (size, material, ...)
    ('history_steps', '<f8'),         # steps in the history-force sum
    ('history_force_sum', '<f8', 3),  # accumulated history-force kernel
])

VELOCITY_FIELDS = (
    'velocity_external',
    'velocity_advection',
    'velocity_ensemble',
    'velocity_previous',
    'history_force_sum',
)


def sphere_volume(diameter: float) -> float:
    """Volume of a sphere of the given diameter."""
    return np.pi * diameter**3 / 6.0


def _vector(value, name: str) -> np.ndarray:
    try:
        vec = np.array(value, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise InvalidParticleStateError(f"{name} is not a 3-vector: {value!r}") from exc

    if vec.shape != (3,):
        raise InvalidParticleStateError(f"{name} must have 3 components, got {vec.shape[0]}")
    if not np.all(np.isfinite(vec)):
        raise InvalidParticleStateError(f"{name} must be finite, got {vec}")
    return vec


def _positive(value, name: str) -> float:
    value = float(value)
    if not np.isfinite(value) or value <= 0.0:
        raise InvalidParticleStateError(f"{name} must be positive and finite, got {value}")
    return value


def _readonly(vec: np.ndarray) -> np.ndarray:
    view = vec.view()
    view.flags.writeable = False
    return view


class ParticleState:
    """
    One tracked particle.

    Velocity-like fields:
        velocity_external:  last velocity from the DEM feed (authoritative)
        velocity_advection: velocity actually used to move through the mesh
        velocity_ensemble:  running average for parcel/ensemble semantics

    position_previous and velocity_previous hold the start-of-step state and
    are only rolled forward by commit_step(). history_steps and
    history_force_sum are the history-force accumulators; they start at
    zero and only ever grow.

    Vector getters return read-only views. All writes go through the
    property setters, which enforce the invariants.
    """

    def __init__(self, position: Sequence[float], diameter: float,
                 velocity: Sequence[float], density: float,
                 global_id: int, dem_partition: int = 0, type_tag: int = 0,
                 cell: int = -1, mass: Optional[float] = None):
        """
        Create a fresh particle from DEM feed components.

        Parameters:
            position: (x, y, z) [m]
            diameter: Particle diameter [m]
            velocity: DEM velocity [m/s]
            density: Particle density [kg/m³]
            global_id: DEM particle tag
            dem_partition: DEM rank that reported the particle
            type_tag: Particle class
            cell: Owning mesh cell, -1 if not yet located
            mass: Override for the derived mass [kg]
        """
        self._position = _vector(position, 'position')
        self._diameter = _positive(diameter, 'diameter')
        self._density = _positive(density, 'density')
        self._mass = 0.0
        if mass is None:
            self.calculate_derived()
        else:
            self.mass = mass

        self._velocity_external = _vector(velocity, 'velocity')
        self._velocity_advection = self._velocity_external.copy()
        self._velocity_ensemble = np.zeros(3)
        self._position_previous = np.zeros(3)
        self._velocity_previous = np.zeros(3)

        self.global_id = int(global_id)
        self.dem_partition = int(dem_partition)
        self.type_tag = int(type_tag)

        self._history_steps = 0.0
        self._history_force_sum = np.zeros(3)

        self.cell = int(cell)
        self._step_fraction = 0.0
        self.alive = True

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    def calculate_derived(self):
        """Recompute mass from diameter and density."""
        self._mass = self._density * sphere_volume(self._diameter)

    @property
    def volume(self) -> float:
        return sphere_volume(self._diameter)

    # ------------------------------------------------------------------
    # Scalars
    # ------------------------------------------------------------------

    @property
    def diameter(self) -> float:
        return self._diameter

    @diameter.setter
    def diameter(self, value: float):
        self._diameter = _positive(value, 'diameter')
        self.calculate_derived()

    @property
    def density(self) -> float:
        return self._density

    @density.setter
    def density(self, value: float):
        self._density = _positive(value, 'density')
        self.calculate_derived()

    @property
    def mass(self) -> float:
        return self._mass

    @mass.setter
    def mass(self, value: float):
        self._mass = _positive(value, 'mass')

    @property
    def step_fraction(self) -> float:
        return self._step_fraction

    @step_fraction.setter
    def step_fraction(self, value: float):
        value = float(value)
        if not 0.0 <= value <= 1.0:
            raise InvalidParticleStateError(f"step_fraction must lie in [0, 1], got {value}")
        self._step_fraction = value

    @property
    def history_steps(self) -> float:
        return self._history_steps

    @history_steps.setter
    def history_steps(self, value: float):
        value = float(value)
        if not np.isfinite(value) or value < self._history_steps:
            raise InvalidParticleStateError(
                f"history_steps cannot decrease ({self._history_steps} -> {value})"
            )
        self._history_steps = value

    # ------------------------------------------------------------------
    # Vectors
    # ------------------------------------------------------------------

    @property
    def position(self) -> np.ndarray:
        return _readonly(self._position)

    @position.setter
    def position(self, value):
        self._position = _vector(value, 'position')

    @property
    def velocity_external(self) -> np.ndarray:
        return _readonly(self._velocity_external)

    @velocity_external.setter
    def velocity_external(self, value):
        self._velocity_external = _vector(value, 'velocity_external')

    @property
    def velocity_advection(self) -> np.ndarray:
        return _readonly(self._velocity_advection)

    @velocity_advection.setter
    def velocity_advection(self, value):
        self._velocity_advection = _vector(value, 'velocity_advection')

    @property
    def velocity_ensemble(self) -> np.ndarray:
        return _readonly(self._velocity_ensemble)

    @velocity_ensemble.setter
    def velocity_ensemble(self, value):
        self._velocity_ensemble = _vector(value, 'velocity_ensemble')

    @property
    def position_previous(self) -> np.ndarray:
        return _readonly(self._position_previous)

    @position_previous.setter
    def position_previous(self, value):
        self._position_previous = _vector(value, 'position_previous')

    @property
    def velocity_previous(self) -> np.ndarray:
        return _readonly(self._velocity_previous)

    @velocity_previous.setter
    def velocity_previous(self, value):
        self._velocity_previous = _vector(value, 'velocity_previous')

    @property
    def history_force_sum(self) -> np.ndarray:
        return _readonly(self._history_force_sum)

    @history_force_sum.setter
    def history_force_sum(self, value):
        self._history_force_sum = _vector(value, 'history_force_sum')

    # ------------------------------------------------------------------
    # Step bookkeeping
    # ------------------------------------------------------------------

    def accumulate_history(self, contribution: Sequence[float]):
        """Add one step's history-kernel contribution and count the step."""
        self._history_force_sum = self._history_force_sum + _vector(contribution, 'history contribution')
        self._history_steps += 1.0

    def commit_step(self):
        """Roll the start-of-step snapshot forward once the step is complete."""
        if self._step_fraction < 1.0:
            raise TrackingError(
                f"Particle {self.global_id} committed mid-step "
                f"(step_fraction={self._step_fraction:.6g})"
            )
        self._position_previous = self._position.copy()
        self._velocity_previous = self._velocity_external.copy()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def to_record(self) -> np.ndarray:
        """Convert to a 1-element PARTICLE_DTYPE array."""
        record = np.zeros(1, dtype=PARTICLE_DTYPE)
        record['version'][0] = RECORD_VERSION
        record['alive'][0] = self.alive
        record['position'][0] = self._position
        record['cell'][0] = self.cell
        record['step_fraction'][0] = self._step_fraction
        record['diameter'][0] = self._diameter
        record['mass'][0] = self._mass
        record['density'][0] = self._density
        record['velocity_external'][0] = self._velocity_external
        record['velocity_advection'][0] = self._velocity_advection
        record['velocity_ensemble'][0] = self._velocity_ensemble
        record['position_previous'][0] = self._position_previous
        record['velocity_previous'][0] = self._velocity_previous
        record['global_id'][0] = self.global_id
        record['dem_partition'][0] = self.dem_partition
        record['type_tag'][0] = self.type_tag
        record['history_steps'][0] = self._history_steps
        record['history_force_sum'][0] = self._history_force_sum
        return record

    @classmethod
    def from_record(cls, record) -> 'ParticleState':
        """
        Rebuild a particle from one PARTICLE_DTYPE record, field for field.

        Every invariant is re-checked; a record that violates one raises
        InvalidParticleStateError.
        """
        state = cls(
            position=record['position'],
            diameter=record['diameter'],
            velocity=record['velocity_external'],
            density=record['density'],
            global_id=record['global_id'],
            dem_partition=record['dem_partition'],
            type_tag=record['type_tag'],
            cell=record['cell'],
            mass=record['mass'],
        )
        state.velocity_advection = record['velocity_advection']
        state.velocity_ensemble = record['velocity_ensemble']
        state.position_previous = record['position_previous']
        state.velocity_previous = record['velocity_previous']
        state.history_steps = record['history_steps']
        state.history_force_sum = record['history_force_sum']
        state.step_fraction = record['step_fraction']
        state.alive = bool(record['alive'])
        return state

    def clone(self) -> 'ParticleState':
        return ParticleState.from_record(self.to_record()[0])

    def __eq__(self, other) -> bool:
        if not isinstance(other, ParticleState):
            return NotImplemented
        return self.to_record().tobytes() == other.to_record().tobytes()

    __hash__ = None

    def __repr__(self) -> str:
        x, y, z = self._position
        return (f"ParticleState(id={self.global_id}, cell={self.cell}, "
                f"pos=({x:.4g}, {y:.4g}, {z:.4g}), d={self._diameter:.4g}, "
                f"f={self._step_fraction:.3f}, n0={self._history_steps:g})")


# ============================================================================
# Example usage
# ============================================================================

if __name__ == "__main__":
    p = ParticleState(position=(0.5, 0.5, 0.5), diameter=0.002,
                      velocity=(1.0, 0.0, 0.0), density=1000.0, global_id=7)
    print(p)
    print(f"  Mass: {p.mass:.4e} kg")
    print(f"  Record size: {PARTICLE_DTYPE.itemsize} bytes")
