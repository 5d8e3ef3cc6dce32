import unittest

import numpy as np

from mpm_ngf.engine.grid import RegularGrid
from mpm_ngf.engine.particles import Particles
from mpm_ngf.engine.solvers.dof_selector import ActiveDofSelector
from ngf_testing import DEVICE, sheared_particles


class TestRegularGrid(unittest.TestCase):
    def test_periodic_pairs_share_canonical_node(self):
        for axes in [("y",), ("x",), ("x", "y")]:
            grid = RegularGrid(res=(4, 3), spacing=0.5, periodic_axes=axes, device=DEVICE)
            pairs = grid.periodic_pairs()
            self.assertGreater(len(pairs), 0)
            for node, partner in pairs:
                self.assertEqual(grid.canonical_nodes[node], grid.canonical_nodes[partner])

    def test_non_periodic_numbering_is_identity(self):
        grid = RegularGrid(res=(4, 3), periodic_axes=(), device=DEVICE)
        np.testing.assert_array_equal(grid.canonical_nodes, np.arange(12))
        self.assertEqual(grid.periodic_pairs(), [])

    def test_element_connectivity(self):
        grid = RegularGrid(res=(4, 3), device=DEVICE)
        self.assertEqual(grid.num_elements, 6)
        # element (1, 1): bottom-left, bottom-right, top-right, top-left
        np.testing.assert_array_equal(grid.element_nodes[4], [5, 6, 10, 9])

    def test_shape_functions(self):
        grid = RegularGrid(res=(5, 5), spacing=0.25, device=DEVICE)
        rng = np.random.default_rng(7)
        x = rng.uniform(0.0, 1.0, size=(20, 2))
        x[0] = [1.5, 0.5]
        particles = Particles.create(20, device=DEVICE, x=x, volume=1.0, mass=1.0)

        grid.locate_particles(particles)

        in_element = particles.numpy("in_element")
        h = particles.numpy("h")
        self.assertEqual(in_element[0], -1)
        located = in_element >= 0
        self.assertEqual(np.count_nonzero(located), 19)
        np.testing.assert_allclose(h[located].sum(axis=1), 1.0, rtol=1e-14)
        np.testing.assert_allclose(particles.numpy("b_x")[located].sum(axis=1), 0.0, atol=1e-12)
        np.testing.assert_allclose(particles.numpy("b_y")[located].sum(axis=1), 0.0, atol=1e-12)

        # shape functions interpolate positions exactly
        nodes = grid.node_coords()[grid.element_nodes[in_element[located]]]
        np.testing.assert_allclose(np.einsum("pk,pkd->pd", h[located], nodes), x[located], atol=1e-12)


class TestActiveDofSelector(unittest.TestCase):
    def test_periodic_pair_maps_to_one_dof(self):
        # 2 x 2 elements, periodic along y: the top row of nodes folds onto the bottom row
        grid = RegularGrid(res=(3, 3), spacing=1.0, periodic_axes=("y",), device=DEVICE)
        particles = sheared_particles([[0.5, 0.5], [0.5, 1.5]], 0.0, jammed=1)
        grid.locate_particles(particles)

        dof_map = ActiveDofSelector(grid).select(particles)

        self.assertEqual(dof_map.num_dofs, 4)
        node_map = dof_map.node_map
        self.assertEqual(node_map[grid.canonical_nodes[grid.node_index(0, 2)]], node_map[grid.node_index(0, 0)])
        self.assertEqual(node_map[grid.canonical_nodes[grid.node_index(1, 2)]], node_map[grid.node_index(1, 0)])
        # ascending order of the first physical node
        self.assertEqual([node_map[n] for n in (0, 1, 3, 4)], [0, 1, 2, 3])
        self.assertEqual(node_map[grid.node_index(2, 0)], -1)

    def test_dense_indices_are_unique(self):
        grid = RegularGrid(res=(6, 6), spacing=0.2, periodic_axes=("x", "y"), device=DEVICE)
        rng = np.random.default_rng(3)
        particles = sheared_particles(rng.uniform(0.0, 1.0, size=(40, 2)), 0.0, jammed=1)
        grid.locate_particles(particles)

        dof_map = ActiveDofSelector(grid).select(particles)

        assigned = dof_map.node_map[dof_map.node_map >= 0]
        np.testing.assert_array_equal(np.sort(assigned), np.arange(dof_map.num_dofs))
        self.assertLessEqual(dof_map.num_dofs, 25)

    def test_unlocated_jammed_particle_is_demoted(self):
        grid = RegularGrid(res=(3, 3), spacing=1.0, device=DEVICE)
        particles = sheared_particles([[5.0, 0.5]], 0.0, jammed=1)
        grid.locate_particles(particles)

        dof_map = ActiveDofSelector(grid).select(particles)

        self.assertEqual(particles.numpy("jammed")[0], 0)
        self.assertEqual(dof_map.num_dofs, 0)
        self.assertEqual(dof_map.num_jammed, 0)

    def test_open_and_inactive_particles_are_ignored(self):
        grid = RegularGrid(res=(3, 3), spacing=1.0, periodic_axes=(), device=DEVICE)
        particles = sheared_particles([[0.5, 0.5], [1.5, 1.5], [1.5, 0.5]], 0.0)
        particles.set("jammed", [1, 0, 1])
        particles.set("active", [1, 1, 0])
        grid.locate_particles(particles)

        dof_map = ActiveDofSelector(grid).select(particles)

        self.assertEqual(dof_map.num_dofs, 4)
        np.testing.assert_array_equal(dof_map.jammed_ids, [0])


if __name__ == "__main__":
    unittest.main(verbosity=2)
