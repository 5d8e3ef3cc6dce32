import os
import tempfile
import unittest

from mpm_ngf.engine.config import MaterialConfig, SimConfig
from mpm_ngf.engine.errors import EXIT_ERROR_MATERIAL_FILE, ConfigurationError, NgfError
from ngf_testing import GLASS_BEADS

PROPERTIES = [1e6, 0.3, 0.3819, 0.6435, 0.278, 2450.0, 1500.0, 0.0053, 0.48]


class TestMaterialConfig(unittest.TestCase):
    def test_from_properties(self):
        material = MaterialConfig.from_properties(PROPERTIES)
        self.assertEqual(material, GLASS_BEADS)
        self.assertAlmostEqual(material.G, 1e6 / 2.6)
        self.assertAlmostEqual(material.lam, material.K - 2.0 * material.G / 3.0)

    def test_too_few_properties(self):
        with self.assertRaises(ConfigurationError) as ctx:
            MaterialConfig.from_properties(PROPERTIES[:8])
        self.assertEqual(ctx.exception.exit_status, EXIT_ERROR_MATERIAL_FILE)
        self.assertIsInstance(ctx.exception, NgfError)

    def test_coulomb_needs_three_properties(self):
        material = MaterialConfig.from_properties(PROPERTIES[:3], rheology="coulomb")
        self.assertEqual(material.mu_s, 0.3819)
        with self.assertRaises(ConfigurationError):
            MaterialConfig.from_properties(PROPERTIES[:2], rheology="coulomb")

    def test_invalid_values(self):
        bad_friction = list(PROPERTIES)
        bad_friction[3] = 0.2
        with self.assertRaises(ConfigurationError):
            MaterialConfig.from_properties(bad_friction)

        bad_poisson = list(PROPERTIES)
        bad_poisson[1] = 0.5
        with self.assertRaises(ConfigurationError):
            MaterialConfig.from_properties(bad_poisson)

    def test_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "glass.props")
            with open(path, "w") as f:
                f.write("# E nu mu_s\n1e6, 0.3 0.3819\n0.6435 0.278  # mu_2 I_0\n2450 1500\n0.0053\n0.48\n")
            self.assertEqual(MaterialConfig.from_file(path), GLASS_BEADS)

    def test_from_file_errors(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ConfigurationError):
                MaterialConfig.from_file(os.path.join(tmp, "missing.props"))

            path = os.path.join(tmp, "bad.props")
            with open(path, "w") as f:
                f.write("1e6 0.3 abc\n")
            with self.assertRaises(ConfigurationError):
                MaterialConfig.from_file(path, rheology="coulomb")


class TestSimConfig(unittest.TestCase):
    def test_defaults_are_valid(self):
        config = SimConfig().validate()
        self.assertEqual(config.max_picard_iterations, 8)
        self.assertEqual(config.picard_tolerance, 1e-5)

    def test_invalid_options(self):
        for kwargs in [
            dict(dt=0.0),
            dict(n_threads=0),
            dict(rheology="bingham"),
            dict(linear_solver="cholmod"),
            dict(grid_res=(1, 5)),
            dict(periodic_axes=("z",)),
        ]:
            with self.assertRaises(ConfigurationError):
                SimConfig(**kwargs).validate()


if __name__ == "__main__":
    unittest.main(verbosity=2)
