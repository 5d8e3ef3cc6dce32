import os
import tempfile
import unittest

import numpy as np

from mpm_ngf.engine.errors import InvariantViolation, LinearSolveError
from mpm_ngf.engine.solvers.diagnostics import DiagnosticsSink
from mpm_ngf.engine.solvers.linear_solver import (
    DiffusionSolver,
    DirectSolver,
    IterativeSolver,
    SparseSystem,
)
from ngf_testing import DEVICE, make_config


def helmholtz_system(n, xisq=0.5):
    """1D (I - xi^2 lap) on n nodes, assembled element by element."""
    system = SparseSystem(n)
    for e in range(n - 1):
        rows = np.array([e, e, e + 1, e + 1])
        cols = np.array([e, e + 1, e, e + 1])
        mass = np.array([2.0, 1.0, 1.0, 2.0]) / 6.0
        stiff = xisq * np.array([1.0, -1.0, -1.0, 1.0])
        system.add_entries(rows, cols, mass + stiff)
    return system


class TestSparseSystem(unittest.TestCase):
    def test_duplicates_are_summed(self):
        system = SparseSystem(3)
        system.add_entries([0, 0, 1], [0, 0, 2], [1.0, 2.5, -1.0])
        system.add_entries(np.array([0]), np.array([0]), np.array([0.5]))

        matrix = system.compress()

        self.assertEqual(matrix.nnz, 2)
        self.assertEqual(matrix[0, 0], 4.0)
        self.assertEqual(matrix[1, 2], -1.0)

    def test_empty_system(self):
        rows, cols, vals = SparseSystem(2).triplets()
        self.assertEqual(len(rows), 0)
        self.assertEqual(SparseSystem(2).compress().nnz, 0)


class TestDiffusionSolver(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.diagnostics = DiagnosticsSink(self.tmp.name)

    def test_strategies_agree(self):
        system = helmholtz_system(12)
        load = np.linspace(0.1, 1.0, 12)

        direct = DiffusionSolver([DirectSolver()], self.diagnostics).solve(system, load)
        iterative = DiffusionSolver([IterativeSolver(device=DEVICE)], self.diagnostics).solve(system, load)

        np.testing.assert_allclose(iterative, direct, rtol=1e-8)
        np.testing.assert_allclose(system.compress() @ direct, load, rtol=1e-12)

    def test_strategy_order_follows_config(self):
        solver = DiffusionSolver.from_config(make_config(linear_solver="iterative"), self.diagnostics)
        self.assertEqual([s.name for s in solver.strategies], ["iterative", "direct"])

        solver = DiffusionSolver.from_config(make_config(), self.diagnostics)
        self.assertEqual([s.name for s in solver.strategies], ["direct", "iterative"])

    def test_singular_system_fails_with_dump(self):
        system = SparseSystem(2)
        system.add_entries([0, 0, 1, 1], [0, 1, 0, 1], [1.0, 1.0, 1.0, 1.0])
        load = np.array([1.0, 0.0])
        solver = DiffusionSolver([DirectSolver(), IterativeSolver(max_iterations=50, device=DEVICE)], self.diagnostics)

        with self.assertRaises(LinearSolveError) as ctx:
            solver.solve(system, load)

        self.assertEqual(ctx.exception.exit_status, 4)
        matrix = np.loadtxt(os.path.join(self.tmp.name, "matrix.cs"), delimiter=",")
        np.testing.assert_array_equal(matrix, [[1.0, 1.0], [1.0, 1.0]])
        np.testing.assert_array_equal(np.loadtxt(os.path.join(self.tmp.name, "load.cs")), load)

    def test_small_negative_values_are_clamped(self):
        system = SparseSystem(2)
        system.add_entries([0, 1], [0, 1], [1.0, 1.0])

        g = DiffusionSolver([DirectSolver()], self.diagnostics).solve(system, np.array([1.0, -1e-12]))

        np.testing.assert_array_equal(g, [1.0, 0.0])

    def test_negative_solution_is_an_invariant_violation(self):
        system = SparseSystem(2)
        system.add_entries([0, 1], [0, 1], [1.0, 1.0])
        solver = DiffusionSolver([DirectSolver()], self.diagnostics)

        with self.assertRaises(InvariantViolation):
            solver.solve(system, np.array([1.0, -1e-6]))

        self.assertTrue(os.path.exists(os.path.join(self.tmp.name, "g_nodes.cs")))
        self.assertEqual(solver.solve_count, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
