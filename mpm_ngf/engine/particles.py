"""
Structure-of-arrays storage for material points.

All floating point fields are float64. The arrays are bundled in a `ParticleFields` warp struct so a kernel
receives the whole particle set through a single argument.
"""

import numpy as np
import warp as wp


@wp.struct
class ParticleFields:
    x: wp.array(dtype=wp.vec2d)
    v: wp.array(dtype=wp.vec2d)
    mass: wp.array(dtype=wp.float64)
    volume: wp.array(dtype=wp.float64)

    # In-plane stress and the out-of-plane history component
    sxx: wp.array(dtype=wp.float64)
    sxy: wp.array(dtype=wp.float64)
    syy: wp.array(dtype=wp.float64)
    szz: wp.array(dtype=wp.float64)

    # Strain rate and spin
    exx_t: wp.array(dtype=wp.float64)
    exy_t: wp.array(dtype=wp.float64)
    eyy_t: wp.array(dtype=wp.float64)
    wxy_t: wp.array(dtype=wp.float64)

    # State variables of the constitutive law
    jammed: wp.array(dtype=wp.int32)
    gammap: wp.array(dtype=wp.float64)
    gammadotp: wp.array(dtype=wp.float64)
    gf: wp.array(dtype=wp.float64)
    gf_local: wp.array(dtype=wp.float64)
    xisq: wp.array(dtype=wp.float64)

    # Shape functions of the containing element (bottom-left, bottom-right, top-right, top-left)
    h: wp.array(dtype=wp.vec4d)
    b_x: wp.array(dtype=wp.vec4d)
    b_y: wp.array(dtype=wp.vec4d)
    in_element: wp.array(dtype=wp.int32)
    active: wp.array(dtype=wp.int32)


SCALAR_FIELDS = (
    "mass",
    "volume",
    "sxx",
    "sxy",
    "syy",
    "szz",
    "exx_t",
    "exy_t",
    "eyy_t",
    "wxy_t",
    "gammap",
    "gammadotp",
    "gf",
    "gf_local",
    "xisq",
)
VECTOR_FIELDS = {"x": wp.vec2d, "v": wp.vec2d, "h": wp.vec4d, "b_x": wp.vec4d, "b_y": wp.vec4d}
INDEX_FIELDS = ("jammed", "in_element", "active")


class Particles:
    """
    Host-side owner of a `ParticleFields` instance.

    The surrounding simulation owns this object; the stress solver only borrows it for the duration of a step.
    """

    def __init__(self, n: int, device=None):
        self.n = n
        self.device = wp.get_device(device)

        self.fields = ParticleFields()
        for name in SCALAR_FIELDS:
            setattr(self.fields, name, wp.zeros(n, dtype=wp.float64, device=self.device))
        for name, dtype in VECTOR_FIELDS.items():
            setattr(self.fields, name, wp.zeros(n, dtype=dtype, device=self.device))
        self.fields.jammed = wp.zeros(n, dtype=wp.int32, device=self.device)
        self.fields.in_element = wp.full(n, value=-1, dtype=wp.int32, device=self.device)
        self.fields.active = wp.full(n, value=1, dtype=wp.int32, device=self.device)

    @classmethod
    def create(cls, n: int, device=None, **values) -> "Particles":
        particles = cls(n, device=device)
        for name, value in values.items():
            particles.set(name, value)
        return particles

    def set(self, name: str, values):
        array = self._array(name)
        if name in INDEX_FIELDS:
            src = np.broadcast_to(np.asarray(values, dtype=np.int32), array.shape)
        elif name in VECTOR_FIELDS:
            src = np.broadcast_to(np.asarray(values, dtype=np.float64), (self.n, VECTOR_FIELDS[name]._length_))
        else:
            src = np.broadcast_to(np.asarray(values, dtype=np.float64), array.shape)
        array.assign(np.ascontiguousarray(src))

    def numpy(self, name: str) -> np.ndarray:
        return self._array(name).numpy()

    def snapshot(self) -> dict:
        """Copy every field to host memory, e.g. for a frame writer."""
        names = SCALAR_FIELDS + tuple(VECTOR_FIELDS) + INDEX_FIELDS
        return {name: self.numpy(name) for name in names}

    def _array(self, name: str) -> wp.array:
        if name not in SCALAR_FIELDS and name not in VECTOR_FIELDS and name not in INDEX_FIELDS:
            raise KeyError(f"Unknown particle field: {name}")
        return getattr(self.fields, name)
