from __future__ import annotations

"""Descriptor engine: eigenvalues of projected density matrices.

For every projector ``inl`` a ``requires_grad`` copy of its PDM block is kept
(``pdm_tensors``) together with its ascending eigenvalues (``d_tensors``). Later
backward passes (Eigen-Jacobian, correction model gradient) differentiate with
respect to exactly these retained blocks.
"""

import logging
from typing import List

import torch

from .blocks import BlockStore, ProjectorLayout, iter_inl
from .eigh import symeigvals

Tensor = torch.Tensor

logger = logging.getLogger(__name__)

__all__ = ["DescriptorEngine"]


class DescriptorEngine:
    """Owns the differentiable PDM blocks of one descriptor evaluation."""

    def __init__(self) -> None:
        self.layout: ProjectorLayout | None = None
        self.pdm_tensors: List[Tensor] = []
        self.d_tensors: List[Tensor] = []

    def clear(self) -> None:
        self.layout = None
        self.pdm_tensors = []
        self.d_tensors = []

    @property
    def ready(self) -> bool:
        return self.layout is not None and len(self.d_tensors) == self.layout.inlmax

    def compute(self, store: BlockStore) -> List[Tensor]:
        """Decompose every block of ``store``; return the per-``inl`` descriptors.

        Previously retained blocks are dropped first. If any block fails to
        decompose the engine is left empty and the error propagates.
        """
        self.clear()
        layout = store.layout
        pdm_tensors: List[Tensor] = []
        d_tensors: List[Tensor] = []
        for inl, iat, nl in iter_inl(layout):
            blk = store.block(iat, nl).detach().clone()
            blk.requires_grad_(True)
            pdm_tensors.append(blk)
            d_tensors.append(symeigvals(blk, uplo="U"))
        self.layout = layout
        self.pdm_tensors = pdm_tensors
        self.d_tensors = d_tensors
        logger.debug("Computed descriptors: inlmax=%d, des_per_atom=%d", layout.inlmax, layout.des_per_atom)
        return d_tensors

    def _require(self, nat: int | None = None) -> ProjectorLayout:
        if not self.ready:
            raise RuntimeError("Descriptors are not available; call compute() first")
        assert self.layout is not None
        if nat is not None and nat != self.layout.nat:
            raise ValueError(f"Atom count mismatch: descriptors built for nat={self.layout.nat}, got nat={nat}")
        return self.layout

    def descriptors(self, nat: int | None = None) -> Tensor:
        """Concatenated descriptors as ``(nat, des_per_atom)``, still attached to the graph."""
        layout = self._require(nat)
        return torch.cat(self.d_tensors, dim=0).reshape(layout.nat, layout.des_per_atom)
