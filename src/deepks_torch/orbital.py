from __future__ import annotations

"""Orbital precalc: orbital PDM shell contracted with the Eigen-Jacobian.

    orbital_precalc[i, a, v] = Σ_{mn} O^{(i)}_{a,mn} · gevdm[a, v, m, n]

per projector shell, concatenated over shells along the descriptor axis.
"""

from typing import List, Sequence

import torch

from .blocks import ProjectorLayout

Tensor = torch.Tensor

__all__ = ["stack_orbital_pdm_shell", "orbital_precalc"]


def stack_orbital_pdm_shell(
    rows: Sequence[Sequence],
    layout: ProjectorLayout,
    *,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> List[Tensor]:
    """Reshape ragged ``rows[hl][inl]`` (flat ``nm*nm`` or ``(nm, nm)``) to per-shell ``(nks, nat, nm, nm)``."""
    out: List[Tensor] = []
    for hl, row in enumerate(rows):
        if len(row) != layout.inlmax:
            raise ValueError(f"orbital_pdm_shell[{hl}] has {len(row)} blocks, expected {layout.inlmax}")
    for nl in range(layout.nlmax):
        nm = layout.nm(nl)
        iammv = []
        for row in rows:
            ammv = []
            for iat in range(layout.nat):
                t = torch.as_tensor(row[layout.inl(iat, nl)], dtype=dtype, device=device)
                if t.numel() != nm * nm:
                    raise ValueError(f"Block inl={layout.inl(iat, nl)} has {t.numel()} entries, expected {nm}x{nm}")
                ammv.append(t.reshape(nm, nm))
            iammv.append(torch.stack(ammv, 0))
        out.append(torch.stack(iammv, 0))
    return out


def orbital_precalc(
    orbital_pdm_shell_vector: Sequence[Tensor],
    gevdm_vector: Sequence[Tensor],
    layout: ProjectorLayout,
) -> Tensor:
    """Return ``(nks, nat, des_per_atom)``."""
    if len(orbital_pdm_shell_vector) != layout.nlmax or len(gevdm_vector) != layout.nlmax:
        raise ValueError(
            f"Shell count mismatch: orbital_pdm_shell={len(orbital_pdm_shell_vector)}, "
            f"gevdm={len(gevdm_vector)}, nlmax={layout.nlmax}"
        )
    parts = []
    for nl in range(layout.nlmax):
        o, gevdm = orbital_pdm_shell_vector[nl], gevdm_vector[nl]
        nm = layout.nm(nl)
        if o.dim() != 4 or tuple(o.shape[1:]) != (layout.nat, nm, nm):
            raise ValueError(f"Shell {nl}: orbital PDM shell has shape {tuple(o.shape)}, expected (nks, {layout.nat}, {nm}, {nm})")
        if tuple(gevdm.shape) != (layout.nat, nm, nm, nm):
            raise ValueError(f"Shell {nl}: Jacobian has shape {tuple(gevdm.shape)}, expected ({layout.nat}, {nm}, {nm}, {nm})")
        parts.append(torch.einsum("iamn,avmn->iav", o, gevdm.to(o.dtype)))
    out = torch.cat(parts, dim=-1)
    assert out.shape[1:] == (layout.nat, layout.des_per_atom)
    return out
