from __future__ import annotations

"""Descriptor gradients with respect to atomic positions (gvx).

Chain rule through the PDM blocks:

    d(des)/dX = d(pdm)/dX · d(des)/d(pdm) = gdmx · gevdm

Inputs ``gdmx/gdmy/gdmz[ibt][inl]`` hold d(PDM block inl)/d(R_ibt, x|y|z), as
supplied by the Hamiltonian-gradient part of the host. Output layout:

    gvx[b, x, a, v] : derivative atom b, direction x, descriptor atom a, slot v
"""

import logging
from typing import List, Sequence

import torch

from ..blocks import ProjectorLayout
from ..context import SimulationContext

Tensor = torch.Tensor

logger = logging.getLogger(__name__)

__all__ = [
    "stack_position_derivatives",
    "contract_position_gradient",
    "descriptor_position_gradient",
]


def _block(value, nm: int, dtype: torch.dtype, device: torch.device) -> Tensor:
    t = torch.as_tensor(value, dtype=dtype, device=device)
    if t.numel() != nm * nm:
        raise ValueError(f"Derivative block has {t.numel()} entries, expected {nm}x{nm}")
    return t.reshape(nm, nm)


def stack_position_derivatives(
    gdmx: Sequence[Sequence],
    gdmy: Sequence[Sequence],
    gdmz: Sequence[Sequence],
    layout: ProjectorLayout,
    *,
    dtype: torch.dtype = torch.float64,
    device: torch.device | str = "cpu",
) -> List[Tensor]:
    """Reshape ragged ``[ibt][inl]`` derivative blocks to per-shell ``(nat_b, 3, nat, nm, nm)``."""
    nat = layout.nat
    device = torch.device(device)
    for name, g in (("gdmx", gdmx), ("gdmy", gdmy), ("gdmz", gdmz)):
        if len(g) != nat:
            raise ValueError(f"{name} has {len(g)} derivative atoms, expected nat={nat}")
        for ibt, row in enumerate(g):
            if len(row) != layout.inlmax:
                raise ValueError(f"{name}[{ibt}] has {len(row)} projector blocks, expected {layout.inlmax}")
    gdmr_vector: List[Tensor] = []
    for nl in range(layout.nlmax):
        nm = layout.nm(nl)
        bmmv = []
        for ibt in range(nat):
            xmmv = []
            for g in (gdmx, gdmy, gdmz):
                ammv = [_block(g[ibt][layout.inl(iat, nl)], nm, dtype, device) for iat in range(nat)]
                xmmv.append(torch.stack(ammv, 0))  # nat*nm*nm
            bmmv.append(torch.stack(xmmv, 0))  # 3*nat*nm*nm
        gdmr_vector.append(torch.stack(bmmv, 0))  # nbt*3*nat*nm*nm
    assert len(gdmr_vector) == layout.nlmax
    return gdmr_vector


def contract_position_gradient(gdmr_vector: Sequence[Tensor], gevdm_vector: Sequence[Tensor], layout: ProjectorLayout) -> Tensor:
    """Contract ``bxamn,avmn->bxav`` per shell and concatenate slots → ``(nat, 3, nat, des_per_atom)``."""
    if len(gdmr_vector) != layout.nlmax or len(gevdm_vector) != layout.nlmax:
        raise ValueError(
            f"Shell count mismatch: gdmr={len(gdmr_vector)}, gevdm={len(gevdm_vector)}, nlmax={layout.nlmax}"
        )
    gvx_vector = []
    for nl in range(layout.nlmax):
        gdmr, gevdm = gdmr_vector[nl], gevdm_vector[nl]
        if gdmr.shape[2:] != gevdm.shape[:1] + gevdm.shape[2:]:
            raise ValueError(
                f"Shell {nl}: derivative blocks {tuple(gdmr.shape)} incompatible with Jacobian {tuple(gevdm.shape)}"
            )
        gvx_vector.append(torch.einsum("bxamn,avmn->bxav", gdmr, gevdm.to(gdmr.dtype)))
    gvx = torch.cat(gvx_vector, dim=-1)
    assert gvx.shape[0] == layout.nat
    assert gvx.shape[1] == 3
    assert gvx.shape[2] == layout.nat
    assert gvx.shape[3] == layout.des_per_atom
    return gvx


def descriptor_position_gradient(
    gdmx: Sequence[Sequence],
    gdmy: Sequence[Sequence],
    gdmz: Sequence[Sequence],
    gevdm_vector: Sequence[Tensor],
    layout: ProjectorLayout,
    ctx: SimulationContext,
) -> Tensor | None:
    """gvx on the coordinator; ``None`` on every other process."""
    if ctx.nat != layout.nat:
        raise ValueError(f"Atom count mismatch: context nat={ctx.nat}, layout nat={layout.nat}")
    if not ctx.is_coordinator:
        logger.debug("Rank %d skips gvx contraction", ctx.rank)
        return None
    gdmr_vector = stack_position_derivatives(gdmx, gdmy, gdmz, layout, dtype=ctx.dtype, device=ctx.device)
    return contract_position_gradient(gdmr_vector, gevdm_vector, layout)
