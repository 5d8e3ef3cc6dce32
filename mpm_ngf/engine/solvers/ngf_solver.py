"""
Stress update of a 2D dense granular material with the nonlocal granular fluidity (NGF) model.

One call to `NonlocalFluiditySolver.step` replaces the particle stresses with their end-of-step values:

1. Elastic trial stress and local mu(I) return mapping, in parallel over particle blocks.
2. Selection of the grid nodes supporting jammed particles.
3. Fixed-point iteration on the fluidity diffusion equation over those nodes.
4. Stress write-back from the accepted shear stresses.

The local and Coulomb rheologies stop after the first stage.
"""

import logging

import numpy as np
import warp as wp

from mpm_ngf.engine.config import RHEOLOGY_NONLOCAL, MaterialConfig, SimConfig
from mpm_ngf.engine.errors import ConfigurationError
from mpm_ngf.engine.grid import RegularGrid
from mpm_ngf.engine.materials.local_rheology import apply_return_mapping, initialize_material, local_step_block
from mpm_ngf.engine.materials.params import make_material_params
from mpm_ngf.engine.materials.trial_stress import TrialArrays, allocate_trial_arrays
from mpm_ngf.engine.particles import Particles
from mpm_ngf.engine.solvers.assembly import NonlocalDiffusionAssembler
from mpm_ngf.engine.solvers.diagnostics import DiagnosticsSink
from mpm_ngf.engine.solvers.dispatch import ThreadDispatcher, ThreadTask
from mpm_ngf.engine.solvers.dof_selector import ActiveDofSelector
from mpm_ngf.engine.solvers.fixed_point import FixedPointCoupler, FixedPointResult
from mpm_ngf.engine.solvers.linear_solver import DiffusionSolver
from mpm_ngf.engine.solvers.projection import ParticleProjector

logger = logging.getLogger(__name__)


class NonlocalFluiditySolver:
    """
    Owns the material constants and the solver components. Particles are borrowed for the duration of a step.
    """

    def __init__(self, config: SimConfig, material: MaterialConfig, grid: RegularGrid = None):
        self.config = config.validate()
        material.validate(config.rheology)
        self.material = material
        self.device = wp.get_device(config.device)

        self.grid = grid if grid is not None else RegularGrid.from_config(config, device=self.device)
        self.params = make_material_params(material, config)
        self.nonlocal_enabled = config.rheology == RHEOLOGY_NONLOCAL

        self.diagnostics = DiagnosticsSink(config.diagnostics_dir)
        self.selector = ActiveDofSelector(self.grid)
        self.assembler = NonlocalDiffusionAssembler(self.grid, self.params, self.diagnostics, device=self.device)
        self.linear_solver = DiffusionSolver.from_config(config, self.diagnostics, device=self.device)
        self.projector = ParticleProjector(self.grid, self.diagnostics, device=self.device)
        self.coupler = FixedPointCoupler(
            self.assembler, self.linear_solver, self.projector, self.params, config, device=self.device
        )
        self.dispatcher = ThreadDispatcher(config.n_threads, device=self.device)

        self.last_result = None
        self.t = 0.0

    def initialize_particles(self, particles: Particles):
        """
        Clear the plastic history and set the initial jammed flags. The out-of-plane stress starts at the mean of the
        in-plane normal stresses (zero for the Coulomb rheology).
        """
        wp.launch(
            kernel=initialize_material,
            dim=particles.n,
            inputs=[particles.fields, self.params],
            device=self.device,
        )
        self.grid.locate_particles(particles)
        logger.info("initialised %d particles, %d jammed", particles.n, int(np.sum(particles.numpy("jammed"))))

    # ------------------------------------------------------------------------------------
    # ------------------------------------ stepping --------------------------------------
    # ------------------------------------------------------------------------------------
    def step(self, particles: Particles, dt: float = None) -> FixedPointResult:
        """
        Advance the particle stresses by one time step. Returns the outcome of the fixed-point iteration (an empty,
        skipped result for the local rheologies). A given `dt` also becomes the step size of later calls.
        """
        if dt is not None:
            if dt <= 0.0:
                raise ConfigurationError(f"Time step dt must be positive, got {dt}")
            self.params.dt = dt
        step_dt = self.params.dt

        self.grid.locate_particles(particles)
        trial = allocate_trial_arrays(particles.n, device=self.device)

        def local_stage(task: ThreadTask):
            wp.launch(
                kernel=local_step_block,
                dim=task.blocksize,
                inputs=[task.offset, particles.fields, self.params, trial],
                device=self.device,
            )
            if not self.nonlocal_enabled:
                wp.launch(
                    kernel=apply_return_mapping,
                    dim=task.blocksize,
                    inputs=[task.offset, particles.fields, self.params, trial],
                    device=self.device,
                )

        def nonlocal_stage(task: ThreadTask):
            self._log_relieved(particles, trial)
            if not self.nonlocal_enabled:
                return FixedPointResult(skipped=True, converged=True)
            return self._solve_nonlocal(particles, trial)

        self.last_result = self.dispatcher.run(particles.n, local_stage, nonlocal_stage)
        self.t += step_dt
        return self.last_result

    def _solve_nonlocal(self, particles: Particles, trial: TrialArrays) -> FixedPointResult:
        dof_map = self.selector.select(particles)
        if dof_map.num_dofs == 0:
            logger.debug("no jammed particles, skipping the nonlocal solve")
            particles.fields.gf.zero_()
            result = FixedPointResult(skipped=True, converged=True)
        else:
            result = self.coupler.run(particles, trial, dof_map)

        wp.launch(
            kernel=apply_return_mapping,
            dim=particles.n,
            inputs=[0, particles.fields, self.params, trial],
            device=self.device,
        )
        return result

    def _log_relieved(self, particles: Particles, trial: TrialArrays):
        relieved = (particles.numpy("active") == 1) & (trial.p_tr.numpy() <= 0.0)
        if np.any(relieved):
            logger.debug("%d particles under non-positive pressure relieved to zero stress", np.count_nonzero(relieved))
