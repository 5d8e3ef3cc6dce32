"""
Structured quadrilateral background grid.

Nodes are numbered row by row, `node = j * nx + i`. Element `e = ey * (nx - 1) + ex` holds its nodes in the order
bottom-left, bottom-right, top-right, top-left, which is also the order of the particle shape weights.
"""

import numpy as np
import warp as wp

from mpm_ngf.engine.config import SimConfig
from mpm_ngf.engine.particles import Particles

NODES_PER_ELEMENT = 4


@wp.kernel
def locate_particles_kernel(
    x: wp.array(dtype=wp.vec2d),
    origin: wp.vec2d,
    inv_dx: wp.float64,
    nx: int,
    ny: int,
    in_element: wp.array(dtype=wp.int32),
    h: wp.array(dtype=wp.vec4d),
    b_x: wp.array(dtype=wp.vec4d),
    b_y: wp.array(dtype=wp.vec4d),
):
    """
    Bilinear shape functions and their gradients for the element containing each particle.
    """
    i = wp.tid()
    float64_zero = wp.float64(0.0)
    float64_one = wp.float64(1.0)

    rel = (x[i] - origin) * inv_dx
    fx = wp.floor(rel[0])
    fy = wp.floor(rel[1])
    ex = wp.int32(fx)
    ey = wp.int32(fy)

    if ex < 0 or ey < 0 or ex >= nx - 1 or ey >= ny - 1:
        in_element[i] = -1
        h[i] = wp.vec4d(float64_zero, float64_zero, float64_zero, float64_zero)
        b_x[i] = wp.vec4d(float64_zero, float64_zero, float64_zero, float64_zero)
        b_y[i] = wp.vec4d(float64_zero, float64_zero, float64_zero, float64_zero)
        return

    xi = rel[0] - fx
    eta = rel[1] - fy

    in_element[i] = ey * (nx - 1) + ex
    h[i] = wp.vec4d(
        (float64_one - xi) * (float64_one - eta),
        xi * (float64_one - eta),
        xi * eta,
        (float64_one - xi) * eta,
    )
    b_x[i] = wp.vec4d(-(float64_one - eta), float64_one - eta, eta, -eta) * inv_dx
    b_y[i] = wp.vec4d(-(float64_one - xi), -xi, xi, float64_one - xi) * inv_dx


class RegularGrid:
    """
    Owns the element connectivity and the canonical (periodic-aware) node numbering.

    Along a periodic axis the last row (or column) of nodes is identified with the first one, so both map to the
    same canonical id.
    """

    def __init__(self, res=(11, 11), spacing=0.1, origin=(0.0, 0.0), periodic_axes=("y",), device=None):
        self.nx, self.ny = int(res[0]), int(res[1])
        self.dx = float(spacing)
        self.origin = (float(origin[0]), float(origin[1]))
        self.periodic_axes = tuple(periodic_axes)
        self.device = wp.get_device(device)

        self.num_nodes = self.nx * self.ny
        self.num_elements = (self.nx - 1) * (self.ny - 1)

        self.element_nodes = self._build_elements()
        self.canonical_nodes = self._build_canonical_numbering()

        self.element_nodes_wp = wp.array(self.element_nodes, dtype=wp.int32, device=self.device)
        self.canonical_nodes_wp = wp.array(self.canonical_nodes, dtype=wp.int32, device=self.device)

    @classmethod
    def from_config(cls, config: SimConfig, device=None) -> "RegularGrid":
        return cls(
            res=config.grid_res,
            spacing=config.grid_spacing,
            origin=config.grid_origin,
            periodic_axes=config.periodic_axes,
            device=device if device is not None else config.device,
        )

    def node_index(self, i: int, j: int) -> int:
        return j * self.nx + i

    def node_coords(self) -> np.ndarray:
        ii, jj = np.meshgrid(np.arange(self.nx), np.arange(self.ny))
        coords = np.stack([ii.ravel(), jj.ravel()], axis=1) * self.dx
        return coords + np.asarray(self.origin)

    def periodic_pairs(self):
        """(node, partner) pairs identified by the periodic fold."""
        pairs = []
        if "y" in self.periodic_axes:
            pairs += [(self.node_index(i, self.ny - 1), self.node_index(i, 0)) for i in range(self.nx)]
        if "x" in self.periodic_axes:
            pairs += [(self.node_index(self.nx - 1, j), self.node_index(0, j)) for j in range(self.ny)]
        return pairs

    def locate_particles(self, particles: Particles):
        """Fill element membership and shape functions from the particle positions."""
        f = particles.fields
        wp.launch(
            kernel=locate_particles_kernel,
            dim=particles.n,
            inputs=[f.x, wp.vec2d(*self.origin), 1.0 / self.dx, self.nx, self.ny],
            outputs=[f.in_element, f.h, f.b_x, f.b_y],
            device=self.device,
        )

    def _build_elements(self) -> np.ndarray:
        ex, ey = np.meshgrid(np.arange(self.nx - 1), np.arange(self.ny - 1))
        bl = (ey * self.nx + ex).ravel()
        return np.stack([bl, bl + 1, bl + self.nx + 1, bl + self.nx], axis=1).astype(np.int32)

    def _build_canonical_numbering(self) -> np.ndarray:
        canonical = np.arange(self.num_nodes, dtype=np.int32).reshape(self.ny, self.nx)
        if "y" in self.periodic_axes:
            canonical[self.ny - 1, :] = canonical[0, :]
        if "x" in self.periodic_axes:
            canonical[:, self.nx - 1] = canonical[:, 0]
        return canonical.ravel()
