import numpy as np
import warp as wp

from mpm_ngf.engine.config import MaterialConfig, SimConfig
from mpm_ngf.engine.materials.local_rheology import local_step
from mpm_ngf.engine.materials.params import MaterialParams, make_material_params
from mpm_ngf.engine.materials.trial_stress import trial_step

wp.init()


@wp.kernel
def local_response(
    exy_t: wp.array(dtype=wp.float64),
    pressure: wp.float64,
    density: wp.float64,
    params: MaterialParams,
    tau_tr: wp.array(dtype=wp.float64),
    tau: wp.array(dtype=wp.float64),
    rate: wp.array(dtype=wp.float64),
):
    # one material point per shear rate, starting from a hydrostatic state
    tid = wp.tid()
    p0 = -pressure
    float64_zero = wp.float64(0.0)

    t0xx, t0xy, t0yy, t0zz, p_tr, tau_tr_i = trial_step(
        p0, float64_zero, p0, p0, float64_zero, exy_t[tid], float64_zero, float64_zero, params
    )
    jammed, tau_i, scale, rate_i = local_step(density, tau_tr_i, p_tr, params)

    tau_tr[tid] = tau_tr_i
    tau[tid] = tau_i
    rate[tid] = rate_i


config = SimConfig(dt=1e-4, rheology="local")
material = MaterialConfig.from_properties((1e6, 0.3, 0.3819, 0.6435, 0.278, 2450.0, 1500.0, 0.0053, 0.48))
params = make_material_params(material, config)

exy_t = wp.array(np.linspace(0.0, 20.0, 11), dtype=wp.float64)
tau_tr = wp.zeros(11, dtype=wp.float64)
tau = wp.zeros(11, dtype=wp.float64)
rate = wp.zeros(11, dtype=wp.float64)

wp.launch(
    kernel=local_response,
    dim=11,
    inputs=[exy_t, 1000.0, 1550.0, params],
    outputs=[tau_tr, tau, rate],
)

# mu = tau / p saturates between mu_s and mu_2 as the imposed shear grows
print(np.column_stack([exy_t.numpy(), tau_tr.numpy(), tau.numpy() / 1000.0, rate.numpy()]))
