import logging

import numpy as np
import warp as wp

from mpm_ngf.engine.config import MaterialConfig, SimConfig
from mpm_ngf.engine.particles import Particles
from mpm_ngf.engine.solvers.ngf_solver import NonlocalFluiditySolver

wp.init()
logging.basicConfig(level=logging.DEBUG)

# A 4 x 4 cell strip, periodic along y, sheared only in its left column of cells
config = SimConfig(dt=1e-5, grid_res=(5, 5), grid_spacing=0.01, periodic_axes=("y",))
material = MaterialConfig.from_properties((1e6, 0.3, 0.3819, 0.6435, 0.278, 2450.0, 1500.0, 0.0053, 0.48))
solver = NonlocalFluiditySolver(config, material)

spacing = 0.005
ii, jj = np.meshgrid(np.arange(8), np.arange(8), indexing="ij")
x = np.stack([(ii.ravel() + 0.5) * spacing, (jj.ravel() + 0.5) * spacing], axis=1)
exy_t = np.where(x[:, 0] < 0.01, 50.0, 0.0)

particles = Particles.create(
    len(x),
    device=solver.device,
    x=x,
    volume=spacing * spacing,
    mass=1550.0 * spacing * spacing,
    sxx=-1000.0,
    syy=-1000.0,
    exy_t=exy_t,
)
solver.initialize_particles(particles)

for _ in range(20):
    result = solver.step(particles)
    print(result.iterations, result.residual)

# fluidity spreads from the sheared column into the static material
print(np.column_stack([x[:, 0], particles.numpy("gf_local"), particles.numpy("gf")])[::8])
