"""
Exceptions raised by the stress-update engine.

Every error carries the process exit status a command line driver should terminate with.
"""

EXIT_ERROR_MATERIAL_FILE = 3
EXIT_ERROR_CS_SOL = 4
EXIT_ERROR_INVARIANT = 5


class NgfError(RuntimeError):
    """Base exception for all engine errors.

    Catch this to handle any fatal stress-update failure generically.
    """

    exit_status = 1


class ConfigurationError(NgfError):
    """Configuration or material parameter error.

    Raised when:
    - Fewer material properties are supplied than the rheology needs
    - A solver option names an unknown strategy or variant
    - A size or time step is not positive
    """

    exit_status = EXIT_ERROR_MATERIAL_FILE


class InvariantViolation(NgfError):
    """Numerical invariant breach in the nonlocal stage.

    Raised when:
    - An assembled matrix or load entry is not finite
    - A volume-weighted term or cooperativity length is negative
    - The solved fluidity is negative beyond tolerance
    - A shear stress reaches the upper friction bound (tau >= mu_2 * p)
    """

    exit_status = EXIT_ERROR_INVARIANT

    def __init__(self, message, particles=None):
        super().__init__(message)
        self.particles = [] if particles is None else list(particles)


class LinearSolveError(NgfError):
    """Every configured linear solver strategy failed on the diffusion system."""

    exit_status = EXIT_ERROR_CS_SOL
