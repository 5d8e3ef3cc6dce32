from pathlib import Path

import numpy as np

from mpm_ngf.engine.particles import Particles

FRAME_COLUMNS = ("id", "x", "y", "volume", "mass", "vx", "vy", "sxx", "sxy", "syy", "gammap", "gammadotp", "gf")


def write_frame_csv(directory, frame: int, particles: Particles, t: float = 0.0, metafile=None):
    """
    Write the active particles of one frame to `<directory>/fp_<frame>.csv`.

    If an open `metafile` is given, a line `path,particles_written,frame,t` is appended to it. Returns the path of
    the frame file and the number of particles written.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"fp_{frame}.csv"

    data = particles.snapshot()
    keep = np.flatnonzero(data["active"] != 0)
    x = data["x"][keep]
    v = data["v"][keep]
    columns = [
        keep,
        x[:, 0],
        x[:, 1],
        data["volume"][keep],
        data["mass"][keep],
        v[:, 0],
        v[:, 1],
        data["sxx"][keep],
        data["sxy"][keep],
        data["syy"][keep],
        data["gammap"][keep],
        data["gammadotp"][keep],
        data["gf"][keep],
    ]
    table = np.column_stack(columns) if len(keep) else np.zeros((0, len(FRAME_COLUMNS)))
    fmt = ["%d"] + ["%.17g"] * (len(FRAME_COLUMNS) - 1)
    np.savetxt(path, table, fmt=fmt, delimiter=",", header=",".join(FRAME_COLUMNS), comments="")

    if metafile is not None:
        metafile.write(f"{path},{len(keep)},{frame},{t:g}\n")
    return path, len(keep)
