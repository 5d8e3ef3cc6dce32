"""
Drive the stress update on a sheared granular layer.

The layer fills the grid, is periodic along y and is sheared with a rate that decays linearly across x, so the
material yields near x = 0 and stays jammed but static further away. Only the stresses evolve; particle positions
are held fixed.
"""

import argparse
import logging
import sys

import numpy as np
import warp as wp

from mpm_ngf.engine.config import RHEOLOGIES, MaterialConfig, SimConfig
from mpm_ngf.engine.errors import NgfError
from mpm_ngf.engine.particles import Particles
from mpm_ngf.engine.solvers.ngf_solver import NonlocalFluiditySolver
from mpm_ngf.engine.writer import write_frame_csv

# Glass beads: E, nu, mu_s, mu_2, I_0, rho_s, rho_c, d, A
DEFAULT_PROPERTIES = (1e6, 0.3, 0.3819, 0.6435, 0.278, 2450.0, 1500.0, 0.0053, 0.48)

# 0.1 x 0.1 layer. The spacing stays below the largest cooperativity length (15 d) so the yield front is resolved.
LAYER_GRID = dict(grid_res=(11, 11), grid_spacing=0.01)


def shear_layer(config: SimConfig, ppc=2, density=1550.0, pressure=1000.0, shear_rate=10.0, device=None):
    nx, ny = config.grid_res
    dx = config.grid_spacing
    n_x, n_y = (nx - 1) * ppc, (ny - 1) * ppc
    spacing = dx / ppc

    ii, jj = np.meshgrid(np.arange(n_x), np.arange(n_y), indexing="ij")
    x = np.stack([(ii.ravel() + 0.5) * spacing, (jj.ravel() + 0.5) * spacing], axis=1) + np.asarray(config.grid_origin)
    n = len(x)

    width = (nx - 1) * dx
    rate = shear_rate * (1.0 - (x[:, 0] - config.grid_origin[0]) / width)

    volume = spacing * spacing
    return Particles.create(
        n,
        device=device,
        x=x,
        volume=volume,
        mass=density * volume,
        sxx=-pressure,
        syy=-pressure,
        exy_t=0.5 * rate,
        wxy_t=-0.5 * rate,
    )


def main(argv=None):
    parser = argparse.ArgumentParser(description="Nonlocal granular fluidity stress update on a shear layer")
    parser.add_argument("--material", help="material property file (E nu mu_s mu_2 I_0 rho_s rho_c d A)")
    parser.add_argument("--rheology", choices=RHEOLOGIES, default="nonlocal")
    parser.add_argument("--solver", choices=("direct", "iterative"), default="direct")
    parser.add_argument("--steps", type=int, default=50)
    parser.add_argument("--dt", type=float, default=1e-5)
    parser.add_argument("--threads", type=int, default=1)
    parser.add_argument("--device", default="cpu")
    parser.add_argument("--output", help="directory for CSV frames")
    parser.add_argument("--frame-every", type=int, default=10)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    wp.init()

    config = SimConfig(
        dt=args.dt,
        n_threads=args.threads,
        device=args.device,
        rheology=args.rheology,
        linear_solver=args.solver,
        diagnostics_dir=args.output or ".",
        **LAYER_GRID,
    )
    try:
        if args.material:
            material = MaterialConfig.from_file(args.material, config.rheology)
        else:
            material = MaterialConfig.from_properties(DEFAULT_PROPERTIES, config.rheology)

        solver = NonlocalFluiditySolver(config, material)
        particles = shear_layer(config, device=solver.device)
        solver.initialize_particles(particles)

        print("Starting Simulation...")
        frame = 0
        for k in range(args.steps):
            result = solver.step(particles)
            if args.output and k % args.frame_every == 0:
                write_frame_csv(args.output, frame, particles, t=solver.t)
                frame += 1
            if args.verbose:
                print(f"step {k}: {result.iterations} iterations, residual {result.residual:.3e}")
        print("Finished.")
    except NgfError as e:
        logging.getLogger(__name__).error("%s", e)
        sys.exit(e.exit_status)


if __name__ == "__main__":
    main()
