from __future__ import annotations

"""Eigen-Jacobian (gevdm): d(descriptor eigenvalue)/d(PDM block entry).

For a shell with ``nm`` channels the retained blocks of all atoms are stacked and
replicated ``nm`` times, ``(nat, nm_v, nm, nm)``, one replica per eigenvalue slot.
After a batched decomposition, a single backward pass with the identity as
cotangent (replica ``v`` selects eigenvalue ``v``) yields, on the replicas,

    gevdm[a, v, m, n] = dλ_{a,v} / dD_{a,mn}

A plain backward into the un-replicated block would sum over ``v``; the replica
axis keeps one gradient per eigenvalue.
"""

from typing import List, Sequence

import torch

from .blocks import ProjectorLayout
from .eigh import symeigvals

Tensor = torch.Tensor

__all__ = ["eigenvalue_jacobian", "shell_jacobian"]


def shell_jacobian(blocks: Tensor) -> Tensor:
    """Jacobian for a stack of same-size blocks ``(nat, nm, nm)`` → ``(nat, nm, nm, nm)``.

    ``blocks`` may be leaves of an existing graph (the descriptor engine's retained
    blocks); only a fresh replica sub-graph is differentiated.
    """
    if blocks.dim() != 3 or blocks.shape[-1] != blocks.shape[-2]:
        raise ValueError(f"Expected blocks of shape (nat, nm, nm), got {tuple(blocks.shape)}")
    nat, nm, _ = blocks.shape
    with torch.enable_grad():
        rep = blocks.detach().unsqueeze(1).repeat(1, nm, 1, 1).requires_grad_(True)
        evals = symeigvals(rep, uplo="U")  # (nat, nm_v, nm)
        shell = torch.eye(nm, dtype=evals.dtype, device=evals.device).expand(nat, nm, nm)
        gevdm, = torch.autograd.grad(evals, rep, grad_outputs=shell, allow_unused=True)
    if gevdm is None:
        return torch.zeros((nat, nm, nm, nm), dtype=blocks.dtype, device=blocks.device)
    return gevdm


def eigenvalue_jacobian(pdm_tensors: Sequence[Tensor], layout: ProjectorLayout) -> List[Tensor]:
    """gevdm per projector shell ``nl``: list of ``(nat, nm, nm, nm)`` tensors.

    pdm_tensors : one ``(nm, nm)`` block per flat ``inl`` (descriptor engine order)
    """
    if len(pdm_tensors) != layout.inlmax:
        raise ValueError(f"Expected {layout.inlmax} PDM blocks for nat={layout.nat}, got {len(pdm_tensors)}")
    gevdm_vector: List[Tensor] = []
    for nl in range(layout.nlmax):
        nm = layout.nm(nl)
        avmm = []
        for iat in range(layout.nat):
            blk = pdm_tensors[layout.inl(iat, nl)]
            if tuple(blk.shape) != (nm, nm):
                raise ValueError(f"Block inl={layout.inl(iat, nl)} has shape {tuple(blk.shape)}, expected ({nm}, {nm})")
            avmm.append(blk.reshape(nm, nm))
        gevdm_vector.append(shell_jacobian(torch.stack(avmm, 0)))
    assert len(gevdm_vector) == layout.nlmax
    return gevdm_vector
