"""
Source terms of the granular fluidity equation.

With the mu(I) law mu = mu_s + (mu_2 - mu_s) / (I_0 / I + 1) and I = gammadot d sqrt(rho_s / p), the local
fluidity g = gammadot / mu of a particle at shear stress tau and pressure p is

    g_local = zeta sqrt(p) p (1 - S0 / tau) / (S2 - tau),    zeta = I_0 / (d sqrt(rho_s))

with S0 = mu_s p and S2 = mu_2 p, and zero inside the yield surface. The stress implied by a fluidity g follows from
tau_tr - tau = G dt gammadot = G dt g tau / p.
"""

import warp as wp

from mpm_ngf.engine.materials.params import MaterialParams


@wp.func
def fluidity_zeta(params: MaterialParams):
    return params.I_0 / (params.d * wp.sqrt(params.rho_s))


@wp.func
def g_local(tau: wp.float64, p: wp.float64, params: MaterialParams):
    """
    Local fluidity at shear stress tau and pressure p. The second return value is 0 when tau reaches the upper
    friction bound mu_2 p, which the return mapping never produces.
    """
    float64_zero = wp.float64(0.0)
    g = float64_zero
    ordered = 1
    S0 = params.mu_s * p
    if tau > S0 and p > float64_zero:
        S2 = params.mu_2 * p
        if tau < S2:
            g = p * wp.sqrt(p) * fluidity_zeta(params) * (wp.float64(1.0) - S0 / tau) / (S2 - tau)
        else:
            ordered = 0
    return g, ordered


@wp.func
def cooperativity_length_sq(tau: wp.float64, p: wp.float64, params: MaterialParams):
    """
    xi^2 = |S2 - tau| A^2 d^2 / (|tau - S0| (mu_2 - mu_s)), capped at (15 d)^2.
    """
    float64_zero = wp.float64(0.0)
    cap = wp.float64(15.0) * params.d  # fifteen grain diameters
    cap_sq = cap * cap
    xisq = float64_zero
    if p > float64_zero:
        S0 = params.mu_s * p
        S2 = params.mu_2 * p
        tau_c = wp.min(tau, S2)
        if tau_c != S0:
            xisq = (wp.abs(S2 - tau_c) * params.A * params.A * params.d * params.d) / (
                wp.abs(tau_c - S0) * (params.mu_2 - params.mu_s)
            )
        else:
            xisq = cap_sq
        xisq = wp.min(xisq, cap_sq)
    return xisq


@wp.func
def fluidity_lower_bound(tau_tr: wp.float64, p_tr: wp.float64, params: MaterialParams):
    """Smallest fluidity for which the implied stress stays below mu_2 p."""
    return (tau_tr / params.mu_2 - p_tr) / (params.G * params.dt)


@wp.func
def admissible_fluidity(tau_tr: wp.float64, p_tr: wp.float64, g: wp.float64, g_loc: wp.float64, params: MaterialParams):
    """
    Clamp a reconstructed fluidity into the admissible range. Below the lower bound the midpoint between the bound
    and the particle's own local fluidity is used; the local fluidity always lies above the bound.
    """
    g_eval = wp.max(g, wp.float64(0.0))
    g_min = fluidity_lower_bound(tau_tr, p_tr, params)
    if g_eval <= g_min:
        g_eval = g_min + wp.float64(0.5) * (g_loc - g_min)
    return g_eval


@wp.func
def g_local_from_g(tau_tr: wp.float64, p_tr: wp.float64, g: wp.float64, params: MaterialParams):
    """
    Local fluidity evaluated at the stress implied by the fluidity g.
    """
    float64_zero = wp.float64(0.0)
    g_loc = float64_zero
    ordered = 1
    if g >= float64_zero and p_tr > float64_zero:
        s = g * params.G * params.dt + p_tr
        tau_s = params.mu_s * s
        tau_2 = params.mu_2 * s
        if tau_tr >= tau_2:
            ordered = 0
        elif tau_tr > tau_s:
            g_loc = (wp.sqrt(p_tr) / tau_tr) * fluidity_zeta(params) * s * (tau_tr - tau_s) / (tau_2 - tau_tr)
    return g_loc, ordered


@wp.func
def dg_local_dg(tau_tr: wp.float64, p_tr: wp.float64, g: wp.float64, params: MaterialParams):
    """
    Derivative of `g_local_from_g` with respect to g. Never positive.
    """
    float64_zero = wp.float64(0.0)
    deriv = float64_zero
    if g >= float64_zero and tau_tr > float64_zero and p_tr > float64_zero:
        Gdt = params.G * params.dt
        mu_g = tau_tr / (p_tr + g * Gdt)
        if mu_g > params.mu_s and mu_g < params.mu_2:
            num = mu_g * mu_g - wp.float64(2.0) * params.mu_s * mu_g + params.mu_s * params.mu_2
            den = (params.mu_2 - mu_g) * (params.mu_2 - mu_g)
            deriv = -fluidity_zeta(params) * wp.sqrt(p_tr) * (num / den) * Gdt / tau_tr
    return deriv


@wp.func
def implied_shear_stress(tau_tr: wp.float64, p_tr: wp.float64, g: wp.float64, params: MaterialParams):
    """Shear stress whose plastic rate G^-1 (tau_tr - tau) / dt equals g tau / p."""
    return tau_tr * p_tr / (p_tr + params.G * params.dt * g)
