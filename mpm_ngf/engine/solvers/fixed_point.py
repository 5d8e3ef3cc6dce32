"""
Outer fixed-point iteration coupling the local return mapping to the nonlocal fluidity field.

The first pass solves the diffusion equation with the source frozen at the local solution. Every following pass
linearises the source around the previous nodal field. After each solve the projected fluidity defines a new
resolved shear stress tau_g = tau_tr p / (p + G dt g) for every jammed particle, and the relative RMS change of that
stress decides termination.
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import warp as wp

from mpm_ngf.engine.config import SimConfig
from mpm_ngf.engine.materials.fluidity import admissible_fluidity, implied_shear_stress
from mpm_ngf.engine.materials.params import MaterialParams
from mpm_ngf.engine.materials.trial_stress import TrialArrays
from mpm_ngf.engine.particles import ParticleFields, Particles
from mpm_ngf.engine.solvers.assembly import NonlocalDiffusionAssembler
from mpm_ngf.engine.solvers.dof_selector import DofMap
from mpm_ngf.engine.solvers.linear_solver import DiffusionSolver
from mpm_ngf.engine.solvers.projection import ParticleProjector

logger = logging.getLogger(__name__)


@dataclass
class FixedPointResult:
    iterations: int = 0
    residual: float = 0.0
    converged: bool = False
    skipped: bool = False
    residuals: list = field(default_factory=list)


@wp.kernel
def update_resolved_stress(
    jammed_ids: wp.array(dtype=wp.int32),
    particles: ParticleFields,
    trial: TrialArrays,
    params: MaterialParams,
    sq_error: wp.array(dtype=wp.float64),
    counted: wp.array(dtype=wp.int32),
):
    """
    Replaces tau_k by the stress implied by the projected fluidity and records the squared relative change.
    """
    tid = wp.tid()
    i = jammed_ids[tid]
    float64_zero = wp.float64(0.0)

    tau_k = trial.tau_tau[i]
    tau_tr = trial.tau_tr[i]
    p = trial.p_tau[i]

    g = admissible_fluidity(tau_tr, p, particles.gf[i], particles.gf_local[i], params)
    tau_g = implied_shear_stress(tau_tr, p, g, params)

    err = float64_zero
    count = 0
    if tau_k > float64_zero:
        rel = (tau_g - tau_k) / tau_k
        err = rel * rel
        count = 1
    sq_error[tid] = err
    counted[tid] = count

    trial.tau_tau[i] = tau_g
    if tau_tr > float64_zero:
        trial.s[i] = tau_g / tau_tr


class FixedPointCoupler:
    def __init__(
        self,
        assembler: NonlocalDiffusionAssembler,
        solver: DiffusionSolver,
        projector: ParticleProjector,
        params: MaterialParams,
        config: SimConfig,
        device=None,
    ):
        self.assembler = assembler
        self.solver = solver
        self.projector = projector
        self.params = params
        self.max_iterations = config.max_picard_iterations
        self.tolerance = config.picard_tolerance
        self.skip_threshold = config.source_skip_threshold
        self.device = device

    def run(self, particles: Particles, trial: TrialArrays, dof_map: DofMap) -> FixedPointResult:
        """
        Iterate until the resolved shear stresses settle. On return `trial.tau_tau` holds the accepted stresses and
        `gf` the projected nonlocal fluidity of every particle.
        """
        result = FixedPointResult()

        system, load = self.assembler.assemble(particles, trial, dof_map)
        if np.sum(load) < self.skip_threshold:
            logger.info("fluidity source %g below threshold, skipping the nonlocal solve", np.sum(load))
            particles.fields.gf.zero_()
            result.skipped = True
            result.converged = True
            return result

        nodal_g = None
        for k in range(1, self.max_iterations + 1):
            if k > 1:
                system, load = self.assembler.assemble(particles, trial, dof_map, nodal_g=nodal_g)
            nodal_g = self.solver.solve(system, load)
            self.projector.project(particles, dof_map, nodal_g)

            residual = self._update_stress(particles, trial, dof_map)
            result.iterations = k
            result.residual = residual
            result.residuals.append(residual)
            logger.debug("fixed point iteration %d: residual %.6e", k, residual)

            if residual <= self.tolerance:
                result.converged = True
                break

        if not result.converged:
            logger.debug(
                "fixed point stopped after %d iterations with residual %.6e", result.iterations, result.residual
            )
        return result

    def _update_stress(self, particles: Particles, trial: TrialArrays, dof_map: DofMap) -> float:
        n = dof_map.num_jammed
        sq_error = wp.zeros(n, dtype=wp.float64, device=self.device)
        counted = wp.zeros(n, dtype=wp.int32, device=self.device)
        wp.launch(
            kernel=update_resolved_stress,
            dim=n,
            inputs=[dof_map.jammed_ids_wp, particles.fields, trial, self.params],
            outputs=[sq_error, counted],
            device=self.device,
        )

        counted_np = counted.numpy()
        if not np.any(counted_np):
            return 0.0
        return float(np.sqrt(np.mean(sq_error.numpy()[counted_np == 1])))
