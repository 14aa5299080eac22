"""
Particle data arriving from the external DEM solver.

One DEMFeed per exchange interval lists every particle still in the DEM
simulation. apply_feed() brings one partition's cloud in line with it:
new particles located in the partition are created, known ones have their
kinematics refreshed, and ones missing from the feed are destroyed.
"""

import logging
import numpy as np
from dataclasses import dataclass
from typing import Optional, Set

from softparticle.core.cloud import ParticleCloud
from softparticle.core.errors import InvalidParticleStateError
from softparticle.core.particle import ParticleState
from softparticle.mesh.base import Mesh

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class DEMFeed:
    """Column arrays, one row per DEM particle."""
    global_id: np.ndarray      # (N,)
    position: np.ndarray       # (N, 3) [m]
    diameter: np.ndarray       # (N,) [m]
    velocity: np.ndarray       # (N, 3) [m/s]
    density: np.ndarray        # (N,) [kg/m³]
    dem_partition: np.ndarray  # (N,)
    type_tag: np.ndarray       # (N,)

    def __post_init__(self):
        self.global_id = np.atleast_1d(np.asarray(self.global_id, dtype=np.int64))
        n = len(self.global_id)

        self.position = np.asarray(self.position, dtype=np.float64).reshape(n, 3)
        self.velocity = np.asarray(self.velocity, dtype=np.float64).reshape(n, 3)
        self.diameter = np.broadcast_to(np.asarray(self.diameter, dtype=np.float64), (n,)).copy()
        self.density = np.broadcast_to(np.asarray(self.density, dtype=np.float64), (n,)).copy()
        self.dem_partition = np.broadcast_to(np.asarray(self.dem_partition, dtype=np.int64), (n,)).copy()
        self.type_tag = np.broadcast_to(np.asarray(self.type_tag, dtype=np.int64), (n,)).copy()

        if len(np.unique(self.global_id)) != n:
            raise InvalidParticleStateError("DEM feed contains duplicate global ids")
        if np.any(self.dem_partition < 0):
            raise InvalidParticleStateError("DEM feed contains negative DEM ranks")

    def __len__(self) -> int:
        return len(self.global_id)


def apply_feed(cloud: ParticleCloud, feed: DEMFeed, mesh: Mesh,
               known_ids: Optional[Set[int]] = None) -> dict:
    """
    Synchronise a partition's cloud with the DEM feed.

    The tracked position of an existing particle is kept; only its
    velocity, size, density, DEM rank and type are refreshed.

    dem_partition is routing metadata: it names the DEM rank that
    CouplingFeedback.by_dem_partition() sends the particle's force to. It
    travels with the particle through migration and the feed row always
    overrides it, so a particle that moved between DEM ranks is routed to
    its new rank from this step on. Such moves are logged at DEBUG.

    Parameters:
        cloud: Particles owned by the partition
        feed: Current DEM data
        mesh: The partition's mesh, used to claim new particles
        known_ids: Ids tracked on any partition; these are never re-created

    Returns:
        Counts of created, updated and removed particles
    """
    rows = {int(gid): row for row, gid in enumerate(feed.global_id)}
    known_ids = known_ids if known_ids is not None else set()
    created = updated = removed = 0

    for state in cloud:
        if state.global_id not in rows:
            cloud.remove(state.global_id)
            removed += 1
            logger.debug("Particle %d left the DEM simulation", state.global_id)

    for gid, row in rows.items():
        state = cloud.get(gid)

        if state is not None:
            state.velocity_external = feed.velocity[row]
            state.diameter = feed.diameter[row]
            state.density = feed.density[row]
            if state.dem_partition != feed.dem_partition[row]:
                logger.debug("Particle %d moved DEM rank %d -> %d", gid,
                             state.dem_partition, feed.dem_partition[row])
            state.dem_partition = int(feed.dem_partition[row])
            state.type_tag = int(feed.type_tag[row])
            updated += 1
            continue

        if gid in known_ids:
            continue

        cell = mesh.find_cell(feed.position[row])
        if cell < 0:
            continue

        cloud.add(ParticleState(
            position=feed.position[row],
            diameter=feed.diameter[row],
            velocity=feed.velocity[row],
            density=feed.density[row],
            global_id=gid,
            dem_partition=feed.dem_partition[row],
            type_tag=feed.type_tag[row],
            cell=cell,
        ))
        created += 1

    return {'created': created, 'updated': updated, 'removed': removed}
