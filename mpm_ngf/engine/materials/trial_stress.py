"""
Elastic trial stress from the objective (Jaumann) stress rate.

The increment is integrated explicitly over one time step:

    dsxx = lambda trD + 2 G exx_t + 2 wxy_t sxy
    dsxy = 2 G exy_t - wxy_t (sxx - syy)
    dsyy = lambda trD + 2 G eyy_t - 2 wxy_t sxy
    dszz = lambda trD

with trD = exx_t + eyy_t. The trial pressure is p = -(sxx + syy + szz) / 3 and the equivalent shear stress
tau = sqrt(0.5 t0:t0) of the deviator t0 = s + p I.
"""

import warp as wp

from mpm_ngf.engine.materials.params import MaterialParams
from mpm_ngf.engine.particles import ParticleFields


@wp.struct
class TrialArrays:
    """Per-particle trial state. Lives for a single stress update."""

    tau_tr: wp.array(dtype=wp.float64)
    p_tr: wp.array(dtype=wp.float64)
    t0xx: wp.array(dtype=wp.float64)
    t0xy: wp.array(dtype=wp.float64)
    t0yy: wp.array(dtype=wp.float64)
    t0zz: wp.array(dtype=wp.float64)

    # Resolved shear stress, its pressure and the scale factor tau_tau / tau_tr
    tau_tau: wp.array(dtype=wp.float64)
    p_tau: wp.array(dtype=wp.float64)
    s: wp.array(dtype=wp.float64)


def allocate_trial_arrays(n: int, device=None) -> TrialArrays:
    trial = TrialArrays()
    for name in ("tau_tr", "p_tr", "t0xx", "t0xy", "t0yy", "t0zz", "tau_tau", "p_tau", "s"):
        setattr(trial, name, wp.zeros(n, dtype=wp.float64, device=device))
    return trial


@wp.func
def trial_step(
    sxx: wp.float64,
    sxy: wp.float64,
    syy: wp.float64,
    szz: wp.float64,
    exx_t: wp.float64,
    exy_t: wp.float64,
    eyy_t: wp.float64,
    wxy_t: wp.float64,
    params: MaterialParams,
):
    """
    Returns the trial deviator (t0xx, t0xy, t0yy, t0zz), the trial pressure and the trial equivalent shear stress.
    """
    float64_two = wp.float64(2.0)
    dt = params.dt

    trD = exx_t + eyy_t
    dsjxx = params.lam * trD + float64_two * params.G * exx_t + float64_two * wxy_t * sxy
    dsjxy = float64_two * params.G * exy_t - wxy_t * (sxx - syy)
    dsjyy = params.lam * trD + float64_two * params.G * eyy_t - float64_two * wxy_t * sxy
    dsjzz = params.lam * trD

    sxx_tr = sxx + dt * dsjxx
    sxy_tr = sxy + dt * dsjxy
    syy_tr = syy + dt * dsjyy
    szz_tr = szz + dt * dsjzz

    p_tr = -(sxx_tr + syy_tr + szz_tr) / wp.float64(3.0)
    t0xx = sxx_tr + p_tr
    t0xy = sxy_tr
    t0yy = syy_tr + p_tr
    t0zz = szz_tr + p_tr
    tau_tr = wp.sqrt(wp.float64(0.5) * (t0xx * t0xx + float64_two * t0xy * t0xy + t0yy * t0yy + t0zz * t0zz))

    return t0xx, t0xy, t0yy, t0zz, p_tr, tau_tr


@wp.func
def store_trial(
    i: int,
    trial: TrialArrays,
    t0xx: wp.float64,
    t0xy: wp.float64,
    t0yy: wp.float64,
    t0zz: wp.float64,
    p_tr: wp.float64,
    tau_tr: wp.float64,
):
    trial.t0xx[i] = t0xx
    trial.t0xy[i] = t0xy
    trial.t0yy[i] = t0yy
    trial.t0zz[i] = t0zz
    trial.p_tr[i] = p_tr
    trial.tau_tr[i] = tau_tr


@wp.kernel
def evaluate_trial_stress(particles: ParticleFields, params: MaterialParams, trial: TrialArrays):
    i = wp.tid()
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
