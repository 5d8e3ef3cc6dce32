import logging
from dataclasses import dataclass

import numpy as np
import warp as wp

from mpm_ngf.engine.grid import RegularGrid
from mpm_ngf.engine.particles import Particles

logger = logging.getLogger(__name__)


@dataclass
class DofMap:
    """
    Reduced numbering of the nodes supporting jammed particles.

    `node_map` is indexed by canonical node id and holds either -1 or a dense index in [0, num_dofs).
    `jammed_ids` lists the particles that contribute to the diffusion system.
    """

    node_map: np.ndarray
    num_dofs: int
    jammed_ids: np.ndarray

    node_map_wp: wp.array = None
    jammed_ids_wp: wp.array = None

    @property
    def num_jammed(self) -> int:
        return len(self.jammed_ids)


class ActiveDofSelector:
    def __init__(self, grid: RegularGrid):
        self.grid = grid

    def select(self, particles: Particles) -> DofMap:
        """
        Marks the four nodes of every active, jammed, located particle and numbers their canonical ids in ascending
        order of the first physical node that maps to them. Jammed particles outside the grid are demoted to open.
        """
        jammed = particles.numpy("jammed")
        active = particles.numpy("active") != 0
        in_element = particles.numpy("in_element")

        unlocated = (jammed == 1) & active & (in_element < 0)
        if np.any(unlocated):
            logger.debug("demoting %d unlocated jammed particles to open", np.count_nonzero(unlocated))
            jammed = np.where(unlocated, 0, jammed).astype(np.int32)
            particles.set("jammed", jammed)

        jammed_ids = np.flatnonzero((jammed == 1) & active).astype(np.int32)

        touched = np.zeros(self.grid.num_nodes, dtype=bool)
        touched[self.grid.element_nodes[in_element[jammed_ids]].ravel()] = True
        touched_nodes = np.flatnonzero(touched)

        canonical = self.grid.canonical_nodes[touched_nodes]
        _, first = np.unique(canonical, return_index=True)
        first.sort()

        node_map = np.full(self.grid.num_nodes, -1, dtype=np.int32)
        node_map[canonical[first]] = np.arange(len(first), dtype=np.int32)

        dof_map = DofMap(node_map=node_map, num_dofs=len(first), jammed_ids=jammed_ids)
        dof_map.node_map_wp = wp.array(node_map, dtype=wp.int32, device=particles.device)
        dof_map.jammed_ids_wp = wp.array(jammed_ids, dtype=wp.int32, device=particles.device)
        return dof_map
