"""
Postmortem dumps of the diffusion system, written only on fatal numerical failures.
"""

import logging
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)

MATRIX_FILE = "matrix.cs"
LOAD_FILE = "load.cs"
NODAL_FIELD_FILE = "g_nodes.cs"


class DiagnosticsSink:
    def __init__(self, directory="."):
        self.directory = Path(directory)

    def dump_matrix(self, matrix) -> Path:
        """Dense, row-major, comma separated, one row per line."""
        dense = matrix.toarray() if hasattr(matrix, "toarray") else np.asarray(matrix)
        return self._write(MATRIX_FILE, np.atleast_2d(dense), delimiter=",")

    def dump_load(self, load) -> Path:
        return self._write(LOAD_FILE, np.asarray(load).reshape(-1, 1))

    def dump_nodal_field(self, g) -> Path:
        return self._write(NODAL_FIELD_FILE, np.asarray(g).reshape(-1, 1))

    def dump_system(self, matrix, load):
        return self.dump_matrix(matrix), self.dump_load(load)

    def _write(self, name, data, delimiter=" ") -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / name
        np.savetxt(path, data, fmt="%.17g", delimiter=delimiter)
        logger.error("wrote diagnostic dump %s", path)
        return path
