"""
Uniform hexahedral box mesh, decomposable into x-slabs.

This is the reference mesh collaborator used by the examples and tests.
Cells carry global linear indices (i + nx*(j + ny*k)) on every partition,
so a neighbour cell index is meaningful on both sides of a processor face.

Local face numbering per cell: 2*axis + side, side 0 = min, side 1 = max.
"""

import numba
import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple

from softparticle.mesh.base import BoundaryKind, FaceHit, Mesh, Patch


SIDES = ('xmin', 'xmax', 'ymin', 'ymax', 'zmin', 'zmax')
PATCH_TYPES = ('patch', 'wall', 'cyclic')


@numba.njit(cache=True)
def segment_exit(start: np.ndarray, end: np.ndarray,
                 lo: np.ndarray, hi: np.ndarray):
    """
    Find where the segment start -> end leaves the box [lo, hi].

    Only faces the segment moves towards are candidates, so a point lying on
    a face it is moving away from is never reported as a crossing.

    Returns:
        (axis, side, t): axis = -1 if the segment ends inside the box,
        otherwise the crossed face and the segment parameter t in [0, 1]
    """
    t_min = 2.0
    axis = -1
    side = -1

    for a in range(3):
        d = end[a] - start[a]
        if d > 0.0:
            t = (hi[a] - start[a]) / d
            s = 1
        elif d < 0.0:
            t = (lo[a] - start[a]) / d
            s = 0
        else:
            continue

        # Start already past the face (round-off): cross immediately
        if t < 0.0:
            t = 0.0

        if t <= 1.0 and t < t_min:
            t_min = t
            axis = a
            side = s

    if axis < 0:
        t_min = 1.0
    return axis, side, t_min


class BoxMesh(Mesh):
    """
    Box [bounds_min, bounds_max] split into n_cells = (nx, ny, nz) cells.

    Example:
        mesh = BoxMesh((0, 0, 0), (2, 1, 1), (4, 2, 2),
                       patch_types={'xmin': 'cyclic', 'xmax': 'cyclic'})
        left, right = mesh.decompose(2)
    """

    def __init__(self, bounds_min: Sequence[float], bounds_max: Sequence[float],
                 n_cells: Sequence[int], patch_types: Optional[Dict[str, str]] = None,
                 partition: int = 0, n_partitions: int = 1):
        """
        Parameters:
            bounds_min: Lower corner [m]
            bounds_max: Upper corner [m]
            n_cells: Cells per direction (nx, ny, nz)
            patch_types: Side name -> 'patch' | 'wall' | 'cyclic' (default 'patch')
            partition: Slab index owned by this instance
            n_partitions: Number of x-slabs in the decomposition
        """
        self.lo = np.asarray(bounds_min, dtype=np.float64)
        self.hi = np.asarray(bounds_max, dtype=np.float64)
        self.shape = np.asarray(n_cells, dtype=np.int64)

        if self.lo.shape != (3,) or self.hi.shape != (3,) or self.shape.shape != (3,):
            raise ValueError("bounds and n_cells must have 3 components")
        if np.any(self.hi <= self.lo):
            raise ValueError(f"Empty box: {self.lo} .. {self.hi}")
        if np.any(self.shape < 1):
            raise ValueError(f"Need at least one cell per direction, got {self.shape}")
        if not 0 <= partition < n_partitions or n_partitions > self.shape[0]:
            raise ValueError(f"Cannot take slab {partition} of {n_partitions} "
                             f"from {self.shape[0]} x-cells")

        self.h = (self.hi - self.lo) / self.shape
        self.partition = partition
        self.n_partitions = n_partitions

        nx = int(self.shape[0])
        self.i_begin = partition * nx // n_partitions
        self.i_end = (partition + 1) * nx // n_partitions

        self.patch_types = {side: 'patch' for side in SIDES}
        for side, ptype in (patch_types or {}).items():
            if side not in SIDES:
                raise ValueError(f"Unknown side '{side}'. Available: {list(SIDES)}")
            if ptype not in PATCH_TYPES:
                raise ValueError(f"Unknown patch type '{ptype}' for {side}. "
                                 f"Available: {list(PATCH_TYPES)}")
            self.patch_types[side] = ptype

        for axis in range(3):
            pair = (self.patch_types[SIDES[2 * axis]], self.patch_types[SIDES[2 * axis + 1]])
            if ('cyclic' in pair) and pair != ('cyclic', 'cyclic'):
                raise ValueError(f"Cyclic sides must come in pairs: "
                                 f"{SIDES[2 * axis]}/{SIDES[2 * axis + 1]}")

        self._patches, self._side_patch = self._build_patches()

    def _build_patches(self) -> Tuple[Tuple[Patch, ...], Dict[int, int]]:
        nx = int(self.shape[0])
        length = self.hi - self.lo
        patches: List[Patch] = []
        side_patch = {}

        for local, side in enumerate(SIDES):
            axis, s = divmod(local, 2)
            ptype = self.patch_types[side]

            separation = None
            if ptype == 'cyclic':
                # Leaving through max re-enters at min, and vice versa
                separation = np.zeros(3)
                separation[axis] = -length[axis] if s == 1 else length[axis]

            interior = axis == 0 and ((s == 0 and self.i_begin > 0) or
                                      (s == 1 and self.i_end < nx))
            wraps = axis == 0 and ptype == 'cyclic' and self.n_partitions > 1

            if interior:
                neighbour = self.partition + (1 if s == 1 else -1)
                patch = Patch(name=f"procBoundary{self.partition}to{neighbour}",
                              index=len(patches), kind=BoundaryKind.PROCESSOR,
                              patch_type='processor', neighbour_partition=neighbour)
            elif wraps:
                neighbour = self.n_partitions - 1 if s == 0 else 0
                patch = Patch(name=f"procBoundary{self.partition}to{neighbour}through{side}",
                              index=len(patches), kind=BoundaryKind.PROCESSOR,
                              patch_type='processorCyclic', neighbour_partition=neighbour,
                              separation=separation)
            else:
                patch = Patch(name=side, index=len(patches), kind=BoundaryKind.PATCH,
                              patch_type=ptype, separation=separation)

            side_patch[local] = patch.index
            patches.append(patch)

        return tuple(patches), side_patch

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def _index(self, i: int, j: int, k: int) -> int:
        nx, ny = int(self.shape[0]), int(self.shape[1])
        return int(i + nx * (j + ny * k))

    def _ijk(self, cell: int) -> Tuple[int, int, int]:
        nx, ny = int(self.shape[0]), int(self.shape[1])
        return cell % nx, (cell // nx) % ny, cell // (nx * ny)

    @property
    def n_cells(self) -> int:
        return int(np.prod(self.shape))

    @property
    def patches(self) -> Tuple[Patch, ...]:
        return self._patches

    def owns(self, cell: int) -> bool:
        if not 0 <= cell < self.n_cells:
            return False
        return self.i_begin <= self._ijk(cell)[0] < self.i_end

    def owned_cells(self) -> np.ndarray:
        return np.array([c for c in range(self.n_cells) if self.owns(c)], dtype=np.int64)

    def cell_volume(self, cell: int) -> float:
        return float(np.prod(self.h))

    def cell_bounds(self, cell: int) -> Tuple[np.ndarray, np.ndarray]:
        lo = self.lo + np.array(self._ijk(cell)) * self.h
        return lo, lo + self.h

    def cell_centre(self, cell: int) -> np.ndarray:
        lo, hi = self.cell_bounds(cell)
        return 0.5 * (lo + hi)

    def find_cell(self, position: Sequence[float]) -> int:
        rel = (np.asarray(position, dtype=np.float64) - self.lo) / self.h
        if np.any(rel < 0.0) or np.any(rel > self.shape):
            return -1

        ijk = np.minimum(np.floor(rel).astype(np.int64), self.shape - 1)
        cell = self._index(*ijk)
        return cell if self.owns(cell) else -1

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_segment(self, cell: int, start: Sequence[float],
                      end: Sequence[float]) -> Optional[FaceHit]:
        lo, hi = self.cell_bounds(cell)
        start = np.ascontiguousarray(start, dtype=np.float64)
        end = np.ascontiguousarray(end, dtype=np.float64)

        axis, side, t = segment_exit(start, end, lo, hi)
        if axis < 0:
            return None

        point = start + t * (end - start)
        point[axis] = hi[axis] if side == 1 else lo[axis]

        normal = np.zeros(3)
        normal[axis] = 1.0 if side == 1 else -1.0

        local = 2 * axis + side
        ijk = list(self._ijk(cell))
        ijk[axis] += 1 if side == 1 else -1
        n_axis = int(self.shape[axis])

        if 0 <= ijk[axis] < n_axis:
            neighbour = self._index(*ijk)
            patch = -1 if self.owns(neighbour) else self._side_patch[local]
        else:
            patch = self._side_patch[local]
            if self.patch_types[SIDES[local]] == 'cyclic':
                ijk[axis] %= n_axis
                neighbour = self._index(*ijk)
            else:
                neighbour = -1

        return FaceHit(face=cell * 6 + local, fraction=float(t), position=point,
                       normal=normal, patch=patch, neighbour=neighbour,
                       face_indices=(cell, local))

    # ------------------------------------------------------------------
    # Decomposition
    # ------------------------------------------------------------------

    def decompose(self, n_partitions: int) -> List['BoxMesh']:
        """Split into n_partitions x-slabs."""
        return [BoxMesh(self.lo, self.hi, self.shape, self.patch_types,
                        partition=p, n_partitions=n_partitions)
                for p in range(n_partitions)]

    def __repr__(self) -> str:
        nx, ny, nz = (int(n) for n in self.shape)
        return (f"BoxMesh({nx}x{ny}x{nz}, partition={self.partition}/"
                f"{self.n_partitions}, x-cells=[{self.i_begin}, {self.i_end}))")
