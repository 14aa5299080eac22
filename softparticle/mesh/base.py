"""
Mesh interface consumed by the tracker.

The tracker only needs read-only topology queries: locate a point, walk a
segment out of a cell, and describe the patch behind a boundary face.
"""

import enum
import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple


class BoundaryKind(enum.Enum):
    PATCH = 'patch'            # external physical patch
    PROCESSOR = 'processor'    # face shared with another partition


@dataclass(frozen=True, eq=False)
class Patch:
    """
    A named group of boundary faces.

    separation / rotation describe the coupled-patch transform for periodic
    patches (and processor patches that wrap a periodic direction).
    """
    name: str
    index: int
    kind: BoundaryKind
    patch_type: str = 'patch'
    neighbour_partition: int = -1
    separation: Optional[np.ndarray] = None
    rotation: Optional[np.ndarray] = None

    @property
    def is_processor(self) -> bool:
        return self.kind is BoundaryKind.PROCESSOR

    @property
    def is_coupled(self) -> bool:
        return self.separation is not None or self.rotation is not None


@dataclass(eq=False)
class FaceHit:
    """First face crossed by a segment leaving a cell."""
    face: int
    fraction: float              # along the queried segment, in [0, 1]
    position: np.ndarray         # hit point, on the face
    normal: np.ndarray           # outward unit normal of the left cell
    patch: int                   # -1 for an internal face
    neighbour: int               # cell across the face, -1 if none
    face_indices: Tuple[int, int] = (-1, -1)   # (cell, local face)

    @property
    def internal(self) -> bool:
        return self.patch < 0


class Mesh(ABC):
    """Read-only mesh partition."""

    partition: int = 0

    @abstractmethod
    def find_cell(self, position: Sequence[float]) -> int:
        """Owned cell containing position, or -1."""

    @abstractmethod
    def owns(self, cell: int) -> bool:
        """True if this partition holds the cell."""

    @abstractmethod
    def track_segment(self, cell: int, start: Sequence[float],
                      end: Sequence[float]) -> Optional[FaceHit]:
        """First face of `cell` crossed by start -> end, or None."""

    @property
    @abstractmethod
    def patches(self) -> Tuple[Patch, ...]:
        """All boundary patches of this partition."""

    @property
    @abstractmethod
    def n_cells(self) -> int:
        """Number of cells in the undecomposed mesh."""

    @abstractmethod
    def cell_volume(self, cell: int) -> float:
        """Volume of a cell."""

    def patch(self, index: int) -> Patch:
        return self.patches[index]

    def patch_by_name(self, name: str) -> Patch:
        for patch in self.patches:
            if patch.name == name:
                return patch
        raise KeyError(f"No patch named '{name}'")
