from __future__ import annotations

"""Projection of AO density matrices onto the descriptor projector basis.

Given the AO–projector overlaps ⟨φ_μ|α^{A}_{p}⟩ of every projector atom A, with
projector functions ordered (L, N, m) inside the atom, the projected blocks are

    D^{A}_{pq} = Σ_{μν} ⟨α_p|φ_μ⟩ P_{μν} ⟨φ_ν|α_q⟩          (PDM)
    O^{A}_{pq} = Σ_{μν} ⟨α_p|φ_μ⟩ P^{hl}_{νμ} ⟨φ_ν|α_q⟩     (orbital PDM shell)

restricted to the diagonal (shell, shell) blocks of size ``(2l+1, 2l+1)``.

AO functions whose centre lies farther than ``rcut_alpha + rcut_ao`` from the
projector atom do not overlap the projector and are masked out. Each process may
pass its local share of the density matrix; partial blocks are summed with the
context's ``reduce_sum`` before they are returned.
"""

from typing import List, Optional, Sequence

import torch

from .blocks import BlockStore, ProjectorLayout
from .context import SimulationContext

Tensor = torch.Tensor

__all__ = ["neighbor_mask", "project_density_matrix", "orbital_pdm_shell"]


def neighbor_mask(
    positions: Tensor,
    ao_atoms: Tensor,
    rcut_alpha: float,
    rcut_ao: Tensor,
    *,
    per_atom: bool = False,
) -> Tensor:
    """Boolean ``(nat, nao)``: AO μ is within ``rcut_alpha + rcut_ao[μ]`` of projector atom A.

    positions : (nat, 3) projector (and AO) centres, same length unit as the radii
    ao_atoms : (nao,) atom index of each AO
    rcut_ao : (nao,) AO cutoff radius, or (nat,) per atom with ``per_atom=True``
    """
    ao_atoms = ao_atoms.long()
    if per_atom:
        if rcut_ao.shape[0] != positions.shape[0]:
            raise ValueError(f"Per-atom cutoffs must have length nat={positions.shape[0]}, got {rcut_ao.shape[0]}")
        rcut_ao = rcut_ao[ao_atoms]
    elif rcut_ao.shape[0] != ao_atoms.shape[0]:
        raise ValueError(
            f"AO cutoffs must have length nao={ao_atoms.shape[0]}, got {rcut_ao.shape[0]}; "
            "pass per_atom=True for per-atom radii"
        )
    dist = torch.linalg.norm(positions.unsqueeze(1) - positions[ao_atoms].unsqueeze(0), dim=-1)  # (nat, nao)
    return dist <= (rcut_alpha + rcut_ao).unsqueeze(0)


def _as_overlaps(overlaps: Tensor | Sequence[Tensor], layout: ProjectorLayout, dtype: torch.dtype, device: torch.device) -> Tensor:
    if isinstance(overlaps, Tensor):
        s = overlaps.to(dtype=dtype, device=device)
    else:
        s = torch.stack([torch.as_tensor(o, dtype=dtype, device=device) for o in overlaps], 0)
    if s.dim() != 3 or s.shape[0] != layout.nat or s.shape[2] != layout.des_per_atom:
        raise ValueError(
            f"Projector overlaps must have shape (nat={layout.nat}, nao, {layout.des_per_atom}), got {tuple(s.shape)}"
        )
    return s


def _diagonal_shell_blocks(full: Tensor, layout: ProjectorLayout) -> List[Tensor]:
    out = []
    for nl, off in enumerate(layout.shell_offsets()):
        nm = layout.nm(nl)
        out.append(full[..., off:off + nm, off:off + nm])
    return out


def _projected(
    dm: Tensor,
    overlaps: Tensor | Sequence[Tensor],
    layout: ProjectorLayout,
    mask: Optional[Tensor],
    ctx: Optional[SimulationContext],
    subscripts: str,
) -> List[Tensor]:
    dtype = ctx.dtype if ctx is not None else torch.float64
    device = ctx.device if ctx is not None else torch.device("cpu")
    if ctx is not None and ctx.nat != layout.nat:
        raise ValueError(f"Atom count mismatch: context nat={ctx.nat}, layout nat={layout.nat}")
    s = _as_overlaps(overlaps, layout, dtype, device)
    dm = torch.as_tensor(dm, dtype=dtype, device=device)
    nao = s.shape[1]
    if dm.shape[-2:] != (nao, nao):
        raise ValueError(f"Density matrix shape {tuple(dm.shape)} does not match nao={nao}")
    if mask is not None:
        if tuple(mask.shape) != (layout.nat, nao):
            raise ValueError(f"Neighbour mask must have shape ({layout.nat}, {nao}), got {tuple(mask.shape)}")
        s = s * mask.to(device=device, dtype=dtype).unsqueeze(-1)
    full = torch.einsum(subscripts, s, dm, s)
    blocks = _diagonal_shell_blocks(full, layout)
    if ctx is not None:
        blocks = [ctx.reduce_sum(b.contiguous()) for b in blocks]
    return blocks


def project_density_matrix(
    dm: Tensor,
    overlaps: Tensor | Sequence[Tensor],
    layout: ProjectorLayout,
    *,
    mask: Optional[Tensor] = None,
    ctx: Optional[SimulationContext] = None,
) -> BlockStore:
    """Build the PDM block store from an AO density matrix ``(nao, nao)``.

    overlaps : (nat, nao, des_per_atom) with ``overlaps[A, μ, p] = ⟨φ_μ|α^{A}_p⟩``
    """
    shells = _projected(dm, overlaps, layout, mask, ctx, "amp,mn,anq->apq")
    kwargs = {}
    if ctx is not None:
        kwargs = {"dtype": ctx.dtype, "device": ctx.device}
    return BlockStore.from_shell_tensors(layout, shells, **kwargs)


def orbital_pdm_shell(
    dm_hl: Tensor,
    overlaps: Tensor | Sequence[Tensor],
    layout: ProjectorLayout,
    *,
    mask: Optional[Tensor] = None,
    ctx: Optional[SimulationContext] = None,
) -> List[Tensor]:
    """Orbital PDM shell per projector shell: list of ``(nks, nat, nm, nm)``.

    dm_hl : (nao, nao) or (nks, nao, nao) density built from the orbitals of interest
            (e.g. the HOMO–LUMO pair). Its indices are contracted transposed.
    """
    dm_hl = torch.as_tensor(dm_hl)
    if dm_hl.dim() == 2:
        dm_hl = dm_hl.unsqueeze(0)
    return _projected(dm_hl, overlaps, layout, mask, ctx, "amp,knm,anq->kapq")
