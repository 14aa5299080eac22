"""Physics module: fluid samples and pluggable coupling models."""

from softparticle.physics.fluid import CellFluid, FluidField, FluidSample, UniformFluid
from softparticle.physics.models import (
    AddedMass, BassetHistoryKernel, LinearBlend, NullHistoryKernel, StokesDrag,
)

__all__ = [
    "CellFluid",
    "FluidField",
    "FluidSample",
    "UniformFluid",
    "AddedMass",
    "BassetHistoryKernel",
    "LinearBlend",
    "NullHistoryKernel",
    "StokesDrag",
]
