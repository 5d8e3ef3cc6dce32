import warp as wp

from mpm_ngf.engine.config import (
    ABSOLUTE_JAMMING_DENSITY,
    RHEOLOGY_COULOMB,
    RHEOLOGY_LOCAL,
    RHEOLOGY_NONLOCAL,
    MaterialConfig,
    SimConfig,
)

MODEL_NONLOCAL = wp.constant(0)
MODEL_LOCAL = wp.constant(1)
MODEL_COULOMB = wp.constant(2)

_MODEL_IDS = {RHEOLOGY_NONLOCAL: 0, RHEOLOGY_LOCAL: 1, RHEOLOGY_COULOMB: 2}


@wp.struct
class MaterialParams:
    dt: wp.float64

    # Elasticity
    G: wp.float64
    lam: wp.float64

    # Rheology
    mu_s: wp.float64
    mu_2: wp.float64
    I_0: wp.float64
    rho_s: wp.float64
    d: wp.float64
    A: wp.float64
    jamming_density: wp.float64

    model: wp.int32


def make_material_params(material: MaterialConfig, config: SimConfig) -> MaterialParams:
    params = MaterialParams()
    params.dt = config.dt
    params.G = material.G
    params.lam = material.lam
    params.mu_s = material.mu_s
    params.mu_2 = material.mu_2
    params.I_0 = material.I_0
    params.rho_s = material.rho_s
    params.d = material.d
    params.A = material.A
    if config.rheology == RHEOLOGY_COULOMB:
        params.jamming_density = ABSOLUTE_JAMMING_DENSITY
    else:
        params.jamming_density = material.rho_c
    params.model = _MODEL_IDS[config.rheology]
    return params
