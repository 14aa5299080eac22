"""Coupling module: DEM feed synchronisation and ensemble feedback."""

from softparticle.coupling.coupler import CouplingFeedback, EnsembleCoupler
from softparticle.coupling.feed import DEMFeed, apply_feed

__all__ = ["CouplingFeedback", "EnsembleCoupler", "DEMFeed", "apply_feed"]
