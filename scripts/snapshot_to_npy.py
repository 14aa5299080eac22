"""
Convert a tracking snapshot from HDF5 to flat NumPy record files.

Writes one .npy file per partition holding the PARTICLE_DTYPE array, handy
for quick inspection or for tools without HDF5 support.

Usage:
    python scripts/snapshot_to_npy.py snapshot.h5 [output_dir]
"""

import sys
import time
from pathlib import Path

import h5py
import numpy as np

from softparticle.transport.codec import DomainMigrationCodec


def convert_snapshot(snapshot: Path, output_dir: Path):
    codec = DomainMigrationCodec()
    output_dir.mkdir(parents=True, exist_ok=True)

    with h5py.File(snapshot, 'r') as f:
        groups = sorted(name for name in f if name.startswith('partition'))
        print(f"Found {len(groups)} partitions in {snapshot.name} "
              f"(t = {float(f.attrs.get('time', 0.0)):.4g} s)\n")

        for name in groups:
            start = time.time()
            states = codec.read_snapshot(f[name])
            records = codec.to_array(states)

            npy_file = output_dir / f"{snapshot.stem}_{name}.npy"
            np.save(npy_file, records)

            # Verify correctness
            loaded = np.load(npy_file)
            assert loaded.tobytes() == records.tobytes(), "Record mismatch!"

            print(f"  {name}: {len(records)} particles, "
                  f"{records.nbytes / 1e3:.1f} kB, {(time.time() - start) * 1000:.1f}ms")
            print(f"  ✓ Saved: {npy_file.name}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    snapshot = Path(sys.argv[1])
    output_dir = Path(sys.argv[2]) if len(sys.argv) > 2 else snapshot.parent
    convert_snapshot(snapshot, output_dir)
