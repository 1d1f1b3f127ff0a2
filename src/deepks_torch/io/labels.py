"""Descriptor report and training-label writers.

Text report (``descriptor.dat``): one header line per atom followed by its
descriptor values, shell by shell, five values per line in ``%20.10e``.

Binary labels (NumPy ``.npy``, one frame per file):
 - ``dm_eig.npy``          descriptors, (nat, des_per_atom)
 - ``e_delta.npy``         correction energy, (1,) in the host unit
 - ``grad_vx.npy``         descriptor position gradient, (nat, 3, nat, des_per_atom)
 - ``orbital_precalc.npy`` (nks, nat, des_per_atom)
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import torch

from ..blocks import ProjectorLayout

__all__ = ["write_descriptor", "save_labels", "LABEL_FILES"]

LABEL_FILES = {
    "descriptor": "dm_eig.npy",
    "e_delta": "e_delta.npy",
    "gvx": "grad_vx.npy",
    "orbital_precalc": "orbital_precalc.npy",
}


def _to_numpy(x) -> np.ndarray:
    if isinstance(x, torch.Tensor):
        return x.detach().cpu().numpy()
    return np.asarray(x, dtype=np.float64)


def _format_float(x: float) -> str:
    return f"{x:20.10e}"


def write_descriptor(
    path: str | Path,
    descriptors,
    layout: ProjectorLayout,
    *,
    symbols: Optional[Sequence[str]] = None,
    per_line: int = 5,
) -> None:
    """Write the human-readable descriptor report.

    - descriptors: (nat, des_per_atom)
    - symbols: atom labels (nat,); defaults to ``X``
    """
    d = _to_numpy(descriptors)
    if d.shape != (layout.nat, layout.des_per_atom):
        raise ValueError(f"descriptors must have shape ({layout.nat}, {layout.des_per_atom}), got {d.shape}")
    if symbols is not None and len(symbols) != layout.nat:
        raise ValueError("symbols must have length nat")
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    offsets = layout.shell_offsets()
    with p.open("w", encoding="utf-8") as f:
        for iat in range(layout.nat):
            label = symbols[iat] if symbols is not None else "X"
            f.write(f"{label} atom_index {iat + 1} n_descriptor {layout.des_per_atom}\n")
            for nl, off in enumerate(offsets):
                vals = d[iat, off:off + layout.nm(nl)]
                for i in range(0, len(vals), per_line):
                    f.write("".join(_format_float(float(v)) for v in vals[i:i + per_line]) + "\n")
            f.write("\n")


def save_labels(
    out_dir: str | Path,
    *,
    descriptor=None,
    e_delta: Optional[float] = None,
    gvx=None,
    orbital_precalc=None,
) -> dict:
    """Save whichever labels are given; returns ``{name: path}`` of written files."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    written = {}
    items = {
        "descriptor": descriptor,
        "e_delta": None if e_delta is None else np.array([e_delta], dtype=np.float64),
        "gvx": gvx,
        "orbital_precalc": orbital_precalc,
    }
    for name, value in items.items():
        if value is None:
            continue
        target = out / LABEL_FILES[name]
        np.save(target, _to_numpy(value))
        written[name] = target
    return written
