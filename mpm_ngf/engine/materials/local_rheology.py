"""
Local return mapping of the mu(I) granular rheology.

A particle is jammed when its density m / V reaches the jamming threshold and its trial pressure is positive.
Open particles lose all stress. Jammed particles outside the Coulomb cone tau_tr > mu_s p_tr relax to the smaller
root of

    (tau_tr - tau) (S2 - tau) = alpha (tau - S0),    alpha = G I_0 dt sqrt(p_tr / rho_s) / d

written in the cancellation-free form tau = 2 H / (B + sqrt(B^2 - 4 H)), B = S2 + tau_tr + alpha,
H = S2 tau_tr + S0 alpha. The rate-independent Coulomb variant returns to the cone itself, tau = S0.
"""

import warp as wp

from mpm_ngf.engine.materials.params import MODEL_COULOMB, MaterialParams
from mpm_ngf.engine.materials.trial_stress import TrialArrays, store_trial, trial_step
from mpm_ngf.engine.particles import ParticleFields


@wp.func
def local_step(rho: wp.float64, tau_tr: wp.float64, p_tr: wp.float64, params: MaterialParams):
    """
    Returns the jammed flag, the resolved shear stress, the scale factor tau / tau_tr and the plastic shear rate.
    """
    float64_zero = wp.float64(0.0)
    float64_one = wp.float64(1.0)

    jammed = 0
    tau = float64_zero
    scale = float64_zero
    rate = tau_tr / (params.G * params.dt)

    if rho >= params.jamming_density and p_tr > float64_zero:
        jammed = 1
        S0 = params.mu_s * p_tr
        tau = tau_tr
        scale = float64_one
        if tau_tr > S0:
            if params.model == MODEL_COULOMB:
                tau = S0
            else:
                S2 = params.mu_2 * p_tr
                alpha = params.G * params.I_0 * params.dt * wp.sqrt(p_tr / params.rho_s) / params.d
                B = S2 + tau_tr + alpha
                H = S2 * tau_tr + S0 * alpha
                tau = wp.float64(2.0) * H / (B + wp.sqrt(B * B - wp.float64(4.0) * H))
            scale = tau / tau_tr
        rate = tau_tr * (float64_one - scale) / (params.G * params.dt)

    return jammed, tau, scale, rate


@wp.kernel
def local_step_block(offset: int, particles: ParticleFields, params: MaterialParams, trial: TrialArrays):
    """
    Trial stress and local return mapping for the contiguous block of particles starting at `offset`.
    """
    i = offset + wp.tid()
    if particles.active[i] == 0:
        particles.jammed[i] = 0
        return

    t0xx, t0xy, t0yy, t0zz, p_tr, tau_tr = trial_step(
        particles.sxx[i],
        particles.sxy[i],
        particles.syy[i],
        particles.szz[i],
        particles.exx_t[i],
        particles.exy_t[i],
        particles.eyy_t[i],
        particles.wxy_t[i],
        params,
    )
    store_trial(i, trial, t0xx, t0xy, t0yy, t0zz, p_tr, tau_tr)

    rho = particles.mass[i] / particles.volume[i]
    jammed, tau, scale, rate = local_step(rho, tau_tr, p_tr, params)

    particles.jammed[i] = jammed
    trial.tau_tau[i] = tau
    trial.s[i] = scale
    trial.p_tau[i] = wp.max(p_tr, wp.float64(0.0))


@wp.kernel
def apply_return_mapping(offset: int, particles: ParticleFields, params: MaterialParams, trial: TrialArrays):
    """
    Writes the final stress and plastic strain history from the accepted resolved shear stress.
    """
    i = offset + wp.tid()
    if particles.active[i] == 0:
        return

    float64_zero = wp.float64(0.0)
    tau_tr = trial.tau_tr[i]
    p_tr = trial.p_tr[i]
    nup_tau = float64_zero

    if particles.jammed[i] == 1:
        scale = wp.float64(1.0)
        if tau_tr > float64_zero:
            scale = trial.tau_tau[i] / tau_tr
        trial.s[i] = scale
        nup_tau = (tau_tr - scale * tau_tr) / params.G / params.dt

        particles.sxx[i] = scale * trial.t0xx[i] - p_tr
        particles.sxy[i] = scale * trial.t0xy[i]
        particles.syy[i] = scale * trial.t0yy[i] - p_tr
        particles.szz[i] = scale * trial.t0zz[i] - p_tr
    else:
        trial.s[i] = float64_zero
        nup_tau = tau_tr / params.G / params.dt

        particles.sxx[i] = float64_zero
        particles.sxy[i] = float64_zero
        particles.syy[i] = float64_zero
        particles.szz[i] = float64_zero

    particles.gammap[i] = particles.gammap[i] + nup_tau * params.dt
    particles.gammadotp[i] = nup_tau


@wp.kernel
def initialize_material(particles: ParticleFields, params: MaterialParams):
    """
    Clears the constitutive history and sets the initial jammed flag from the particle density.
    """
    i = wp.tid()
    float64_zero = wp.float64(0.0)

    jammed = 0
    if particles.mass[i] / particles.volume[i] > params.jamming_density:
        jammed = 1
    particles.jammed[i] = jammed

    particles.gammap[i] = float64_zero
    particles.gammadotp[i] = float64_zero
    particles.gf[i] = float64_zero
    particles.gf_local[i] = float64_zero
    particles.xisq[i] = float64_zero

    if params.model == MODEL_COULOMB:
        particles.szz[i] = float64_zero
    else:
        particles.szz[i] = wp.float64(0.5) * (particles.sxx[i] + particles.syy[i])
