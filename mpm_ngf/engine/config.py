import logging
import re
from dataclasses import dataclass, fields

from mpm_ngf.engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

RHEOLOGY_NONLOCAL = "nonlocal"
RHEOLOGY_LOCAL = "local"
RHEOLOGY_COULOMB = "coulomb"
RHEOLOGIES = (RHEOLOGY_NONLOCAL, RHEOLOGY_LOCAL, RHEOLOGY_COULOMB)

LINEAR_SOLVERS = ("direct", "iterative")
PERIODIC_AXES = ("x", "y")

# Density below which the rate-independent Coulomb material is treated as open.
ABSOLUTE_JAMMING_DENSITY = 1485.0

MATERIAL_PROPERTY_NAMES = ("E", "nu", "mu_s", "mu_2", "I_0", "rho_s", "rho_c", "d", "A")


@dataclass
class SimConfig:
    dt: float = 1e-6
    n_threads: int = 1
    device: str = "cpu"

    rheology: str = RHEOLOGY_NONLOCAL
    linear_solver: str = "direct"  # the other strategy is the fallback

    # Outer fixed-point loop
    max_picard_iterations: int = 8
    picard_tolerance: float = 1e-5
    source_skip_threshold: float = 1e-12
    negative_field_tolerance: float = 1e-10

    # Iterative linear solver
    iterative_tolerance: float = 1e-13
    iterative_max_iterations: int = 1000

    # Grid
    grid_res: tuple[int, int] = (11, 11)  # nodes per axis
    grid_spacing: float = 0.1
    grid_origin: tuple[float, float] = (0.0, 0.0)
    periodic_axes: tuple[str, ...] = ("y",)

    diagnostics_dir: str = "."

    def validate(self):
        if self.dt <= 0.0:
            raise ConfigurationError(f"Time step dt must be positive, got {self.dt}")
        if self.n_threads < 1:
            raise ConfigurationError(f"n_threads must be at least 1, got {self.n_threads}")
        if self.rheology not in RHEOLOGIES:
            raise ConfigurationError(f"Unknown rheology '{self.rheology}', expected one of {RHEOLOGIES}")
        if self.linear_solver not in LINEAR_SOLVERS:
            raise ConfigurationError(
                f"Unknown linear solver '{self.linear_solver}', expected one of {LINEAR_SOLVERS}"
            )
        if self.max_picard_iterations < 1:
            raise ConfigurationError("max_picard_iterations must be at least 1")
        if min(self.grid_res) < 2:
            raise ConfigurationError(f"Grid needs at least 2 nodes per axis, got {self.grid_res}")
        if self.grid_spacing <= 0.0:
            raise ConfigurationError(f"Grid spacing must be positive, got {self.grid_spacing}")
        for axis in self.periodic_axes:
            if axis not in PERIODIC_AXES:
                raise ConfigurationError(f"Unknown periodic axis '{axis}', expected one of {PERIODIC_AXES}")
        return self


@dataclass(frozen=True)
class MaterialConfig:
    """
    Elastic moduli and mu(I) rheology constants of a granular material.

    Built once and passed explicitly to the solver. Derived moduli follow the
    usual isotropic relations: G = E / (2 (1 + nu)), K = E / (3 (1 - 2 nu)) and
    the Lame parameter lambda = K - 2 G / 3.
    """

    E: float  # Young's modulus
    nu: float  # Poisson's ratio
    mu_s: float  # static friction coefficient
    mu_2: float = 0.0  # limiting friction coefficient
    I_0: float = 0.0  # inertial number scale
    rho_s: float = 0.0  # grain (solid) density
    rho_c: float = 0.0  # critical (jamming) density
    d: float = 0.0  # grain diameter
    A: float = 0.0  # nonlocal amplitude

    @property
    def G(self) -> float:
        return self.E / (2.0 * (1.0 + self.nu))

    @property
    def K(self) -> float:
        return self.E / (3.0 * (1.0 - 2.0 * self.nu))

    @property
    def lam(self) -> float:
        return self.K - 2.0 * self.G / 3.0

    @staticmethod
    def required_properties(rheology: str) -> int:
        if rheology == RHEOLOGY_COULOMB:
            return 3
        return len(MATERIAL_PROPERTY_NAMES)

    @classmethod
    def from_properties(cls, values, rheology: str = RHEOLOGY_NONLOCAL) -> "MaterialConfig":
        """Build a material from the ordered property list E, nu, mu_s, mu_2, I_0, rho_s, rho_c, d, A."""
        values = [float(v) for v in values]
        needed = cls.required_properties(rheology)
        if len(values) < needed:
            names = ", ".join(MATERIAL_PROPERTY_NAMES[:needed])
            raise ConfigurationError(
                f"Need at least {needed} properties defined ({names}) for the {rheology} rheology, got {len(values)}"
            )

        material = cls(**dict(zip(MATERIAL_PROPERTY_NAMES, values[: len(MATERIAL_PROPERTY_NAMES)])))
        material.validate(rheology)
        logger.info(
            "properties (%s, G = %g, K = %g)",
            ", ".join(f"{f.name} = {getattr(material, f.name):g}" for f in fields(material)),
            material.G,
            material.K,
        )
        return material

    @classmethod
    def from_file(cls, path, rheology: str = RHEOLOGY_NONLOCAL) -> "MaterialConfig":
        """Read properties separated by whitespace or commas; '#' starts a comment."""
        values = []
        try:
            with open(path) as f:
                for line in f:
                    line = line.split("#", 1)[0]
                    values.extend(tok for tok in re.split(r"[,\s]+", line) if tok)
        except OSError as e:
            raise ConfigurationError(f"Cannot read material file {path}: {e}") from e
        try:
            return cls.from_properties(values, rheology)
        except ValueError as e:
            raise ConfigurationError(f"Malformed material file {path}: {e}") from e

    def validate(self, rheology: str = RHEOLOGY_NONLOCAL):
        if self.E <= 0.0:
            raise ConfigurationError(f"Young's modulus must be positive, got {self.E}")
        if not -1.0 < self.nu < 0.5:
            raise ConfigurationError(f"Poisson's ratio must lie in (-1, 0.5), got {self.nu}")
        if rheology == RHEOLOGY_COULOMB:
            return
        if self.mu_2 <= self.mu_s:
            raise ConfigurationError(f"mu_2 ({self.mu_2}) must exceed mu_s ({self.mu_s})")
        for name in ("I_0", "rho_s", "d"):
            if getattr(self, name) <= 0.0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
