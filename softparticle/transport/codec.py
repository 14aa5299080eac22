"""
Binary records for particle migration and snapshots.

A record is one PARTICLE_DTYPE element as raw bytes. Because the layout is
fixed-size, a bulk block is just records concatenated, and decoding a block
is a single np.frombuffer call. Snapshots store the same structured array
as an HDF5 compound dataset.
"""

import h5py
import numpy as np
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, List, Optional, Union

from softparticle.core.errors import (
    CodecError, GeometricInconsistencyError, InvalidParticleStateError,
)
from softparticle.core.particle import ParticleState, PARTICLE_DTYPE, RECORD_VERSION
from softparticle.mesh.base import Mesh


SNAPSHOT_DATASET = 'particles'


@contextmanager
def _snapshot_group(target, mode: str):
    if isinstance(target, h5py.Group):
        yield target
    else:
        with h5py.File(Path(target), mode) as f:
            yield f


class DomainMigrationCodec:
    """
    Encode/decode ParticleState records.

    Usage:
        codec = DomainMigrationCodec()
        payload = codec.encode(state)
        same = codec.decode(payload, mesh)
    """

    dtype = PARTICLE_DTYPE
    record_size = PARTICLE_DTYPE.itemsize

    # ------------------------------------------------------------------
    # Byte records
    # ------------------------------------------------------------------

    def encode(self, state: ParticleState) -> bytes:
        return state.to_record().tobytes()

    def encode_many(self, states: Iterable[ParticleState]) -> bytes:
        return self.to_array(states).tobytes()

    def decode(self, payload: bytes, mesh: Optional[Mesh] = None) -> ParticleState:
        """Decode exactly one record."""
        if len(payload) != self.record_size:
            raise CodecError(
                f"Single record must be {self.record_size} bytes, got {len(payload)}"
            )
        return self.decode_many(payload, mesh)[0]

    def decode_many(self, payload: bytes, mesh: Optional[Mesh] = None) -> List[ParticleState]:
        """
        Decode a bulk block of records.

        Parameters:
            payload: Concatenated records
            mesh: Receiving partition; particles are re-homed to one of its cells

        Returns:
            Particles in block order
        """
        n_records, extra = divmod(len(payload), self.record_size)
        if extra:
            raise CodecError(
                f"Block of {len(payload)} bytes is not a whole number of "
                f"{self.record_size}-byte records"
            )
        records = np.frombuffer(payload, dtype=PARTICLE_DTYPE, count=n_records)
        return self.from_array(records, mesh)

    # ------------------------------------------------------------------
    # Structured arrays
    # ------------------------------------------------------------------

    def to_array(self, states: Iterable[ParticleState]) -> np.ndarray:
        records = [state.to_record() for state in states]
        if not records:
            return np.zeros(0, dtype=PARTICLE_DTYPE)
        return np.concatenate(records)

    def from_array(self, records: np.ndarray, mesh: Optional[Mesh] = None) -> List[ParticleState]:
        if records.dtype.names != PARTICLE_DTYPE.names:
            raise CodecError(f"Unexpected record fields: {records.dtype.names}")
        records = records.astype(PARTICLE_DTYPE, copy=False)

        versions = np.unique(records['version'])
        if versions.size and (versions.size > 1 or versions[0] != RECORD_VERSION):
            raise CodecError(
                f"Record version {versions.tolist()} does not match {RECORD_VERSION}"
            )

        ids, counts = np.unique(records['global_id'], return_counts=True)
        if np.any(counts > 1):
            raise CodecError(f"Duplicate global_id in block: {ids[counts > 1].tolist()}")

        states = []
        for record in records:
            try:
                state = ParticleState.from_record(record)
            except InvalidParticleStateError as exc:
                raise CodecError(
                    f"Record for particle {int(record['global_id'])} is invalid: {exc}"
                ) from exc

            if mesh is not None:
                self._rehome(state, mesh)
            states.append(state)
        return states

    @staticmethod
    def _rehome(state: ParticleState, mesh: Mesh):
        if mesh.owns(state.cell):
            return
        cell = mesh.find_cell(state.position)
        if cell < 0:
            raise GeometricInconsistencyError(
                f"Received particle {state.global_id} at {state.position} lies "
                f"outside partition {mesh.partition}"
            )
        state.cell = cell

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def write_snapshot(self, target: Union[str, Path, h5py.Group],
                       states: Iterable[ParticleState], **attrs):
        """
        Write particles to an HDF5 file or group.

        Parameters:
            target: File path (overwritten) or open h5py group
            states: Particles to store
            attrs: Extra attributes stored alongside (time, partition, ...)
        """
        records = self.to_array(states)

        with _snapshot_group(target, 'w') as group:
            if SNAPSHOT_DATASET in group:
                del group[SNAPSHOT_DATASET]
            group.create_dataset(SNAPSHOT_DATASET, data=records)
            group.attrs['version'] = RECORD_VERSION
            group.attrs['n_particles'] = len(records)
            for key, value in attrs.items():
                group.attrs[key] = value

    def read_snapshot(self, target: Union[str, Path, h5py.Group],
                      mesh: Optional[Mesh] = None) -> List[ParticleState]:
        """Read particles written by write_snapshot()."""
        with _snapshot_group(target, 'r') as group:
            if SNAPSHOT_DATASET not in group:
                raise CodecError(f"No '{SNAPSHOT_DATASET}' dataset in snapshot")

            version = int(group.attrs.get('version', -1))
            if version != RECORD_VERSION:
                raise CodecError(f"Snapshot version {version} does not match {RECORD_VERSION}")

            records = np.asarray(group[SNAPSHOT_DATASET][()])
            expected = int(group.attrs.get('n_particles', len(records)))

        if len(records) != expected:
            raise CodecError(f"Snapshot holds {len(records)} particles, header says {expected}")

        return self.from_array(records, mesh)
