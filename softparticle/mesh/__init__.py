"""Mesh module: topology interface and the reference box mesh."""

from softparticle.mesh.base import BoundaryKind, FaceHit, Mesh, Patch
from softparticle.mesh.box import BoxMesh

__all__ = ["BoundaryKind", "FaceHit", "Mesh", "Patch", "BoxMesh"]
