"""
Sparse linear algebra for the fluidity diffusion system.

`SparseSystem` accumulates (row, column, value) triplets, compresses them with duplicate entries summed and hands
the result to a solver strategy. Two strategies are available: a direct sparse LU factorization (scipy SuperLU)
and a preconditioned BiCGSTAB iteration on a warp BSR matrix. The configured strategy runs first and the other
one serves as fallback.
"""

import logging

import numpy as np
import scipy.sparse
import warp as wp
import warp.optim.linear
import warp.sparse as wps
from scipy.sparse.linalg import splu

from mpm_ngf.engine.config import SimConfig
from mpm_ngf.engine.errors import InvariantViolation, LinearSolveError
from mpm_ngf.engine.solvers.diagnostics import DiagnosticsSink

logger = logging.getLogger(__name__)


class SparseSystem:
    def __init__(self, num_dofs: int):
        self.num_dofs = num_dofs
        self._rows = []
        self._cols = []
        self._vals = []

    def add_entries(self, rows, cols, vals):
        self._rows.append(_to_numpy(rows, np.int32))
        self._cols.append(_to_numpy(cols, np.int32))
        self._vals.append(_to_numpy(vals, np.float64))

    def triplets(self):
        if not self._rows:
            return np.zeros(0, np.int32), np.zeros(0, np.int32), np.zeros(0, np.float64)
        return np.concatenate(self._rows), np.concatenate(self._cols), np.concatenate(self._vals)

    def compress(self) -> scipy.sparse.csr_matrix:
        rows, cols, vals = self.triplets()
        matrix = scipy.sparse.coo_matrix((vals, (rows, cols)), shape=(self.num_dofs, self.num_dofs)).tocsr()
        matrix.sum_duplicates()
        return matrix


def _to_numpy(values, dtype):
    if isinstance(values, wp.array):
        values = values.numpy()
    return np.asarray(values, dtype=dtype)


class DirectSolver:
    name = "direct"

    def solve(self, matrix: scipy.sparse.csr_matrix, load: np.ndarray) -> np.ndarray:
        try:
            lu = splu(matrix.tocsc())
        except RuntimeError as e:
            raise LinearSolveError(f"sparse LU factorization failed: {e}") from e
        x = lu.solve(np.asarray(load, dtype=np.float64))
        if not np.all(np.isfinite(x)):
            raise LinearSolveError("sparse LU produced non-finite values")
        return x


class IterativeSolver:
    name = "iterative"

    def __init__(self, tolerance=1e-13, max_iterations=1000, acceptance=1e-6, device=None):
        self.tolerance = tolerance
        self.max_iterations = max_iterations
        self.acceptance = acceptance
        self.device = device

    def solve(self, matrix: scipy.sparse.csr_matrix, load: np.ndarray) -> np.ndarray:
        n = matrix.shape[0]
        coo = matrix.tocoo()
        A = wps.bsr_from_triplets(
            rows_of_blocks=n,
            cols_of_blocks=n,
            rows=wp.array(coo.row.astype(np.int32), dtype=wp.int32, device=self.device),
            columns=wp.array(coo.col.astype(np.int32), dtype=wp.int32, device=self.device),
            values=wp.array(coo.data, dtype=wp.float64, device=self.device),
        )
        b = wp.array(np.asarray(load, dtype=np.float64), dtype=wp.float64, device=self.device)
        x = wp.zeros(n, dtype=wp.float64, device=self.device)

        M = warp.optim.linear.preconditioner(A, ptype="diag")
        warp.optim.linear.bicgstab(A=A, b=b, x=x, tol=self.tolerance, maxiter=self.max_iterations, M=M)

        x_np = x.numpy()
        b_norm = np.linalg.norm(load)
        residual = np.linalg.norm(load - matrix @ x_np)
        if not np.all(np.isfinite(x_np)) or residual > self.acceptance * b_norm:
            raise LinearSolveError(f"BiCGSTAB did not converge (residual {residual:g}, |b| {b_norm:g})")
        return x_np


class DiffusionSolver:
    """
    Solves the assembled diffusion system and enforces the non-negativity of the fluidity.
    """

    def __init__(self, strategies, diagnostics: DiagnosticsSink, negative_tolerance=1e-10):
        self.strategies = list(strategies)
        self.diagnostics = diagnostics
        self.negative_tolerance = negative_tolerance
        self.solve_count = 0

    @classmethod
    def from_config(cls, config: SimConfig, diagnostics: DiagnosticsSink, device=None) -> "DiffusionSolver":
        direct = DirectSolver()
        iterative = IterativeSolver(
            tolerance=config.iterative_tolerance,
            max_iterations=config.iterative_max_iterations,
            device=device if device is not None else config.device,
        )
        strategies = [direct, iterative] if config.linear_solver == "direct" else [iterative, direct]
        return cls(strategies, diagnostics, negative_tolerance=config.negative_field_tolerance)

    def solve(self, system: SparseSystem, load: np.ndarray) -> np.ndarray:
        self.solve_count += 1
        matrix = system.compress()

        failures = []
        for strategy in self.strategies:
            try:
                g = strategy.solve(matrix, load)
                break
            except LinearSolveError as e:
                logger.warning("%s solve failed: %s", strategy.name, e)
                failures.append(f"{strategy.name}: {e}")
        else:
            self.diagnostics.dump_system(matrix, load)
            raise LinearSolveError("all linear solver strategies failed (" + "; ".join(failures) + ")")

        negative = g < -self.negative_tolerance
        if np.any(negative):
            self.diagnostics.dump_system(matrix, load)
            self.diagnostics.dump_nodal_field(g)
            worst = int(np.argmin(g))
            raise InvariantViolation(f"negative fluidity g[{worst}] = {g[worst]:g} beyond tolerance")

        g[g < 0.0] = 0.0
        return g
