import logging

import numpy as np
import warp as wp

from mpm_ngf.engine.particles import ParticleFields, Particles
from mpm_ngf.engine.solvers.diagnostics import DiagnosticsSink
from mpm_ngf.engine.solvers.dof_selector import DofMap

logger = logging.getLogger(__name__)


@wp.kernel
def project_fluidity(
    particles: ParticleFields,
    element_nodes: wp.array2d(dtype=wp.int32),
    canonical_nodes: wp.array(dtype=wp.int32),
    node_map: wp.array(dtype=wp.int32),
    nodal_g: wp.array(dtype=wp.float64),
    negative_count: wp.array(dtype=wp.int32),
):
    """
    gf = sum_k h_k g[dof_k] for jammed particles, zero for everyone else.
    """
    i = wp.tid()
    float64_zero = wp.float64(0.0)
    e = particles.in_element[i]

    gf = float64_zero
    if particles.active[i] == 1 and particles.jammed[i] == 1 and e >= 0:
        s = particles.h[i]
        for k in range(4):
            dof = node_map[canonical_nodes[element_nodes[e, k]]]
            if dof >= 0:
                gf += s[k] * nodal_g[dof]
        if gf < float64_zero:
            wp.atomic_add(negative_count, 0, 1)
            gf = float64_zero

    particles.gf[i] = gf


class ParticleProjector:
    """
    Maps the nodal fluidity back to the particles. A negative projected value is reported, not raised.
    """

    def __init__(self, grid, diagnostics: DiagnosticsSink, device=None):
        self.grid = grid
        self.diagnostics = diagnostics
        self.device = device

    def project(self, particles: Particles, dof_map: DofMap, nodal_g) -> int:
        """Returns the number of particles that received a negative fluidity."""
        g_wp = wp.array(np.asarray(nodal_g, dtype=np.float64), dtype=wp.float64, device=self.device)
        negative_count = wp.zeros(1, dtype=wp.int32, device=self.device)

        wp.launch(
            kernel=project_fluidity,
            dim=particles.n,
            inputs=[
                particles.fields,
                self.grid.element_nodes_wp,
                self.grid.canonical_nodes_wp,
                dof_map.node_map_wp,
                g_wp,
            ],
            outputs=[negative_count],
            device=self.device,
        )

        negatives = int(negative_count.numpy()[0])
        if negatives > 0:
            logger.warning("%d particles received a negative fluidity from the nodal solution", negatives)
            self.diagnostics.dump_nodal_field(nodal_g)
        return negatives
