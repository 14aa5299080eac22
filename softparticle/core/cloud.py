"""
Per-partition particle container.

Particles are keyed by their DEM global id, which must be unique across the
whole ensemble; adding an id twice is an error rather than an overwrite.
"""

import numpy as np
from typing import Dict, Iterable, Iterator, List, Optional

from softparticle.core.errors import InvalidParticleStateError
from softparticle.core.particle import ParticleState, PARTICLE_DTYPE


class ParticleCloud:
    """Particles currently owned by one partition."""

    def __init__(self, particles: Optional[Iterable[ParticleState]] = None):
        self._particles: Dict[int, ParticleState] = {}
        for state in particles or ():
            self.add(state)

    def add(self, state: ParticleState):
        if state.global_id in self._particles:
            raise InvalidParticleStateError(
                f"Duplicate global_id {state.global_id} in cloud"
            )
        self._particles[state.global_id] = state

    def remove(self, global_id: int) -> ParticleState:
        """Remove and return a particle."""
        return self._particles.pop(global_id)

    def get(self, global_id: int) -> Optional[ParticleState]:
        return self._particles.get(global_id)

    def ids(self) -> List[int]:
        return list(self._particles)

    def __contains__(self, global_id: int) -> bool:
        return global_id in self._particles

    def __len__(self) -> int:
        return len(self._particles)

    def __iter__(self) -> Iterator[ParticleState]:
        # Snapshot so callers may remove while iterating
        return iter(list(self._particles.values()))

    @property
    def n_alive(self) -> int:
        return sum(1 for p in self._particles.values() if p.alive)

    def to_structured_array(self) -> np.ndarray:
        """Pack every particle into one PARTICLE_DTYPE array."""
        if not self._particles:
            return np.zeros(0, dtype=PARTICLE_DTYPE)
        return np.concatenate([p.to_record() for p in self._particles.values()])

    @classmethod
    def from_structured_array(cls, records: np.ndarray) -> 'ParticleCloud':
        return cls(ParticleState.from_record(r) for r in records)

    def get_statistics(self) -> dict:
        """Get statistics about the cloud."""
        if not self._particles:
            return {
                'n_total': 0,
                'n_alive': 0,
                'mean_diameter': 0.0,
                'total_mass': 0.0,
                'mean_speed': 0.0,
            }

        diameters = np.array([p.diameter for p in self._particles.values()])
        masses = np.array([p.mass for p in self._particles.values()])
        speeds = np.array([np.linalg.norm(p.velocity_external)
                           for p in self._particles.values()])

        return {
            'n_total': len(self._particles),
            'n_alive': self.n_alive,
            'mean_diameter': float(np.mean(diameters)),
            'total_mass': float(np.sum(masses)),
            'mean_speed': float(np.mean(speeds)),
        }

    def __repr__(self) -> str:
        stats = self.get_statistics()
        return (f"ParticleCloud(n={stats['n_total']}, "
                f"alive={stats['n_alive']}, "
                f"<d>={stats['mean_diameter']:.3g} m)")
