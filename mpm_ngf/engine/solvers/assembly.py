"""
Assembly of the nonlocal fluidity equation

    g - xi^2 lap(g) = g_local

over the reduced DOF set. Each jammed particle of volume V with shape values s_i and gradients grad s_i adds

    K_ij += V (c s_i s_j + xi^2 grad s_i . grad s_j),    f_i += V s_i q

In the linear pass c = 1 and q is the local fluidity of the accepted shear stress. In the nonlinear passes the source
is linearised around the fluidity g_r reconstructed from the previous nodal solution: c = 1 - dg_local/dg and
q = g_local(g_r) - dg_local/dg g_r.

Every particle owns 16 matrix slots and 4 load slots, so the kernel needs no atomics. Duplicates are summed when the
system is compressed and the load is reduced with numpy.bincount.
"""

import logging

import numpy as np
import warp as wp

from mpm_ngf.engine.errors import InvariantViolation
from mpm_ngf.engine.grid import NODES_PER_ELEMENT, RegularGrid
from mpm_ngf.engine.materials.fluidity import (
    admissible_fluidity,
    cooperativity_length_sq,
    dg_local_dg,
    g_local,
    g_local_from_g,
)
from mpm_ngf.engine.materials.params import MaterialParams
from mpm_ngf.engine.materials.trial_stress import TrialArrays
from mpm_ngf.engine.particles import ParticleFields, Particles
from mpm_ngf.engine.solvers.diagnostics import DiagnosticsSink
from mpm_ngf.engine.solvers.dof_selector import DofMap
from mpm_ngf.engine.solvers.linear_solver import SparseSystem

logger = logging.getLogger(__name__)

ENTRIES_PER_PARTICLE = NODES_PER_ELEMENT * NODES_PER_ELEMENT

# Per-particle status bits
STATUS_NON_FINITE = wp.constant(1)
STATUS_NEGATIVE = wp.constant(2)
STATUS_YIELD_ORDER = wp.constant(4)

_STATUS_MESSAGES = {
    1: "non-finite matrix or load entry",
    2: "negative volume-weighted term",
    4: "shear stress at or above mu_2 p",
}


@wp.func
def particle_dof(
    e: int,
    k: int,
    element_nodes: wp.array2d(dtype=wp.int32),
    canonical_nodes: wp.array(dtype=wp.int32),
    node_map: wp.array(dtype=wp.int32),
):
    return node_map[canonical_nodes[element_nodes[e, k]]]


@wp.kernel
def assemble_diffusion_system(
    jammed_ids: wp.array(dtype=wp.int32),
    particles: ParticleFields,
    trial: TrialArrays,
    params: MaterialParams,
    element_nodes: wp.array2d(dtype=wp.int32),
    canonical_nodes: wp.array(dtype=wp.int32),
    node_map: wp.array(dtype=wp.int32),
    nodal_g: wp.array(dtype=wp.float64),
    nonlinear: int,
    rows: wp.array(dtype=wp.int32),
    cols: wp.array(dtype=wp.int32),
    vals: wp.array(dtype=wp.float64),
    load_rows: wp.array(dtype=wp.int32),
    load_vals: wp.array(dtype=wp.float64),
    status: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    i = jammed_ids[tid]
    e = particles.in_element[i]

    float64_zero = wp.float64(0.0)
    float64_one = wp.float64(1.0)

    V = particles.volume[i]
    s = particles.h[i]
    bx = particles.b_x[i]
    by = particles.b_y[i]

    tau = trial.tau_tau[i]
    p = trial.p_tau[i]
    tau_tr = trial.tau_tr[i]

    code = 0
    xisq = cooperativity_length_sq(tau, p, params)
    particles.xisq[i] = xisq

    c = float64_one
    q = float64_zero
    if nonlinear == 0:
        g_loc, ordered = g_local(tau, p, params)
        if ordered == 0:
            code = code | STATUS_YIELD_ORDER
        particles.gf_local[i] = g_loc
        q = g_loc
    else:
        g_r = float64_zero
        for k in range(4):
            g_r += s[k] * nodal_g[particle_dof(e, k, element_nodes, canonical_nodes, node_map)]
        g_eval = admissible_fluidity(tau_tr, p, g_r, particles.gf_local[i], params)
        g_loc, ordered = g_local_from_g(tau_tr, p, g_eval, params)
        if ordered == 0:
            code = code | STATUS_YIELD_ORDER
        dgdg = dg_local_dg(tau_tr, p, g_eval, params)
        c = float64_one - dgdg
        q = g_loc - dgdg * g_eval

    if not (wp.isfinite(V) and wp.isfinite(xisq) and wp.isfinite(q) and wp.isfinite(c)):
        code = code | STATUS_NON_FINITE
    if V < float64_zero or xisq < float64_zero:
        code = code | STATUS_NEGATIVE

    for a in range(4):
        dof_a = particle_dof(e, a, element_nodes, canonical_nodes, node_map)
        f_a = V * q * s[a]
        if f_a < float64_zero:
            code = code | STATUS_NEGATIVE
        load_rows[tid * 4 + a] = dof_a
        load_vals[tid * 4 + a] = f_a

        for b in range(4):
            dof_b = particle_dof(e, b, element_nodes, canonical_nodes, node_map)
            k_ab = V * (c * s[a] * s[b] + xisq * (bx[a] * bx[b] + by[a] * by[b]))
            if not wp.isfinite(k_ab):
                code = code | STATUS_NON_FINITE
            slot = tid * 16 + a * 4 + b
            rows[slot] = dof_a
            cols[slot] = dof_b
            vals[slot] = k_ab

    status[tid] = code


class NonlocalDiffusionAssembler:
    def __init__(self, grid: RegularGrid, params: MaterialParams, diagnostics: DiagnosticsSink, device=None):
        self.grid = grid
        self.params = params
        self.diagnostics = diagnostics
        self.device = device

    def assemble(self, particles: Particles, trial: TrialArrays, dof_map: DofMap, nodal_g=None):
        """
        Builds the diffusion system. Passing the previous nodal solution `nodal_g` selects the nonlinear mode.

        Returns the `SparseSystem` and the load vector as a numpy array.
        """
        n = dof_map.num_jammed
        nonlinear = nodal_g is not None
        if nodal_g is None:
            g_wp = wp.zeros(max(dof_map.num_dofs, 1), dtype=wp.float64, device=self.device)
        else:
            g_wp = wp.array(np.asarray(nodal_g, dtype=np.float64), dtype=wp.float64, device=self.device)

        rows = wp.zeros(n * ENTRIES_PER_PARTICLE, dtype=wp.int32, device=self.device)
        cols = wp.zeros(n * ENTRIES_PER_PARTICLE, dtype=wp.int32, device=self.device)
        vals = wp.zeros(n * ENTRIES_PER_PARTICLE, dtype=wp.float64, device=self.device)
        load_rows = wp.zeros(n * NODES_PER_ELEMENT, dtype=wp.int32, device=self.device)
        load_vals = wp.zeros(n * NODES_PER_ELEMENT, dtype=wp.float64, device=self.device)
        status = wp.zeros(n, dtype=wp.int32, device=self.device)

        wp.launch(
            kernel=assemble_diffusion_system,
            dim=n,
            inputs=[
                dof_map.jammed_ids_wp,
                particles.fields,
                trial,
                self.params,
                self.grid.element_nodes_wp,
                self.grid.canonical_nodes_wp,
                dof_map.node_map_wp,
                g_wp,
                int(nonlinear),
            ],
            outputs=[rows, cols, vals, load_rows, load_vals, status],
            device=self.device,
        )

        system = SparseSystem(dof_map.num_dofs)
        system.add_entries(rows, cols, vals)
        load = np.bincount(load_rows.numpy(), weights=load_vals.numpy(), minlength=dof_map.num_dofs)

        self._check(system, load, status.numpy(), dof_map)
        return system, load

    def _check(self, system: SparseSystem, load: np.ndarray, status: np.ndarray, dof_map: DofMap):
        bad = np.flatnonzero(status)
        if len(bad) == 0:
            return

        codes = np.bitwise_or.reduce(status[bad])
        reasons = [msg for bit, msg in _STATUS_MESSAGES.items() if codes & bit]
        particle_ids = dof_map.jammed_ids[bad]
        logger.error(
            "diffusion assembly invariant violated by %d particles (first: %d): %s",
            len(bad),
            particle_ids[0],
            ", ".join(reasons),
        )
        self.diagnostics.dump_system(system.compress(), load)
        raise InvariantViolation("diffusion assembly: " + ", ".join(reasons), particles=particle_ids)
