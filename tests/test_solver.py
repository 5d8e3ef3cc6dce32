import tempfile
import unittest

import numpy as np

from mpm_ngf.engine.errors import ConfigurationError
from mpm_ngf.engine.solvers.ngf_solver import NonlocalFluiditySolver
from ngf_testing import GLASS_BEADS, PRESSURE, closed_form_shear_stress, make_config, sheared_particles
from scripts.run_ngf import LAYER_GRID, shear_layer

DT = 1e-5
# Shear rate whose trial shear stress is tau_tr
RATE_PER_STRESS = 1.0 / (2.0 * GLASS_BEADS.G * DT)

# A row of four 0.01 x 0.01 cells, each holding 2 x 2 particles
STRIP = dict(grid_res=(5, 2), grid_spacing=0.01, periodic_axes=())
STRIP_VOLUME = 2.5e-5


def strip_particles(stress_per_cell):
    offsets = np.array([[0.0025, 0.0025], [0.0075, 0.0025], [0.0075, 0.0075], [0.0025, 0.0075]])
    x = np.concatenate([offsets + [0.01 * e, 0.0] for e in range(len(stress_per_cell))])
    tau_tr = np.repeat(np.asarray(stress_per_cell, dtype=np.float64), 4)
    return sheared_particles(x, tau_tr * RATE_PER_STRESS, volume=STRIP_VOLUME), tau_tr


class SolverTestCase(unittest.TestCase):
    def make_solver(self, **kwargs):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        kwargs.setdefault("dt", DT)
        kwargs.setdefault("diagnostics_dir", self.tmp.name)
        return NonlocalFluiditySolver(make_config(**kwargs), GLASS_BEADS)


class TestNonlocalFluiditySolver(SolverTestCase):
    def test_no_jammed_particles_skips_the_solve(self):
        solver = self.make_solver()
        particles = sheared_particles([[0.15, 0.15], [0.55, 0.35]], 600.0 * RATE_PER_STRESS, density=1000.0)
        particles.set("gf", 1.0)

        result = solver.step(particles)

        self.assertTrue(result.skipped)
        self.assertEqual(solver.linear_solver.solve_count, 0)
        np.testing.assert_array_equal(particles.numpy("gf"), 0.0)
        np.testing.assert_array_equal(particles.numpy("sxy"), 0.0)

    def test_static_material_skips_the_solve(self):
        solver = self.make_solver()
        particles = sheared_particles([[0.15, 0.15], [0.55, 0.35]], 100.0 * RATE_PER_STRESS)

        result = solver.step(particles)

        self.assertTrue(result.skipped)
        self.assertEqual(solver.linear_solver.solve_count, 0)
        np.testing.assert_array_equal(particles.numpy("gf"), 0.0)
        np.testing.assert_allclose(particles.numpy("sxy"), 100.0, rtol=1e-12)

    def test_single_dof_reproduces_local_solution(self):
        # A fully periodic single element folds to one DOF, where the nonlocal term vanishes
        solver = self.make_solver(grid_res=(2, 2), grid_spacing=1.0, periodic_axes=("x", "y"))
        tau_tr = 800.0
        particles = sheared_particles([[0.3, 0.6]], tau_tr * RATE_PER_STRESS)

        result = solver.step(particles)

        self.assertEqual(result.iterations, 1)
        self.assertTrue(result.converged)
        self.assertEqual(solver.linear_solver.solve_count, 1)

        expected = closed_form_shear_stress(tau_tr, PRESSURE, GLASS_BEADS, DT)
        self.assertLess(abs(particles.numpy("sxy")[0] - expected), 1e-10 * expected)
        np.testing.assert_allclose(particles.numpy("gf"), particles.numpy("gf_local"), rtol=1e-12)

    def test_fluidity_spreads_into_static_region(self):
        solver = self.make_solver(**STRIP)
        # the first cell flows, the others sit just inside the yield surface
        particles, tau_tr = strip_particles([900.0, 380.0, 380.0, 380.0])

        result = solver.step(particles)

        self.assertFalse(result.skipped)
        self.assertLessEqual(result.iterations, 8)
        self.assertEqual(len(result.residuals), result.iterations)
        self.assertEqual(result.residual, result.residuals[-1])

        gf = particles.numpy("gf")
        np.testing.assert_array_equal(particles.numpy("gf_local")[4:], 0.0)
        self.assertTrue(np.all(gf >= 0.0))
        self.assertTrue(np.all(gf[4:8] > 0.0))

        tau = np.abs(particles.numpy("sxy"))
        self.assertTrue(np.all(tau <= tau_tr + 1e-9))
        self.assertTrue(np.all(tau < GLASS_BEADS.mu_2 * PRESSURE))
        # creep below the yield stress next to the flowing cell
        self.assertTrue(np.all(tau[4:8] < 380.0))
        self.assertTrue(np.all(particles.numpy("gammadotp")[4:8] > 0.0))

    def test_centroid_particle_in_open_element_matches_closed_form(self):
        solver = self.make_solver(grid_res=(2, 2), grid_spacing=1.0, periodic_axes=())
        tau_tr = 800.0
        particles = sheared_particles([[0.5, 0.5]], tau_tr * RATE_PER_STRESS)

        result = solver.step(particles)

        self.assertFalse(result.skipped)
        self.assertTrue(result.converged)
        expected = closed_form_shear_stress(tau_tr, PRESSURE, GLASS_BEADS, DT)
        self.assertLess(abs(particles.numpy("sxy")[0] - expected), 1e-10 * expected)
        np.testing.assert_allclose(particles.numpy("gf"), particles.numpy("gf_local"), rtol=1e-10)

    def test_iteration_limit_is_not_an_error(self):
        solver = self.make_solver(max_picard_iterations=2, picard_tolerance=1e-300, **STRIP)
        particles, _ = strip_particles([900.0, 380.0, 380.0, 380.0])

        result = solver.step(particles)

        self.assertEqual(result.iterations, 2)
        self.assertFalse(result.converged)
        self.assertEqual(solver.linear_solver.solve_count, 2)

    def test_thread_count_does_not_change_result(self):
        stresses = []
        for n_threads in (1, 3):
            solver = self.make_solver(n_threads=n_threads, **STRIP)
            particles, _ = strip_particles([900.0, 380.0, 380.0, 380.0])
            solver.step(particles)
            stresses.append(particles.numpy("sxy"))

        np.testing.assert_array_equal(stresses[0], stresses[1])

    def test_time_step_override(self):
        solver = self.make_solver()
        particles = sheared_particles([[0.55, 0.55]], 0.0)

        # the new step size stays in effect for later steps
        solver.step(particles, dt=2e-5)
        solver.step(particles)

        self.assertAlmostEqual(solver.t, 4e-5, places=15)
        with self.assertRaises(ConfigurationError):
            solver.step(particles, dt=0.0)

    def test_inactive_particles_are_untouched(self):
        solver = self.make_solver(grid_res=(2, 2), grid_spacing=1.0, periodic_axes=("x", "y"))
        particles = sheared_particles([[0.3, 0.6], [0.7, 0.2]], 900.0 * RATE_PER_STRESS)
        particles.set("active", [1, 0])

        solver.step(particles)

        self.assertEqual(particles.numpy("sxx")[1], -PRESSURE)
        self.assertEqual(particles.numpy("sxy")[1], 0.0)
        self.assertEqual(particles.numpy("gf")[1], 0.0)
        self.assertGreater(particles.numpy("gf")[0], 0.0)


class TestShearLayer(SolverTestCase):
    def test_layer_keeps_running_after_first_yield(self):
        solver = self.make_solver(**LAYER_GRID)
        particles = shear_layer(solver.config, device=solver.device)
        solver.initialize_particles(particles)

        first_yield = None
        for k in range(60):
            result = solver.step(particles)
            if first_yield is None and not result.skipped:
                first_yield = k

        self.assertIsNotNone(first_yield)
        self.assertGreaterEqual(59 - first_yield, 40)
        self.assertTrue(result.converged)

        gf = particles.numpy("gf")
        self.assertTrue(np.all(gf >= 0.0))
        self.assertGreater(gf.max(), 0.0)
        for name in ("sxx", "sxy", "syy"):
            self.assertTrue(np.all(np.isfinite(particles.numpy(name))))


if __name__ == "__main__":
    unittest.main(verbosity=2)
