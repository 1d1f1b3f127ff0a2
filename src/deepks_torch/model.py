from __future__ import annotations

"""Correction model adapter: E_delta and dE_delta/d(PDM).

The model is an opaque TorchScript module mapping descriptors ``(nat, des_per_atom)``
to a scalar energy in Hartree. The adapter converts to the host unit and
backpropagates through the model and the eigen-decomposition into the PDM blocks
retained by :class:`~deepks_torch.descriptor.DescriptorEngine`. The result,

    gedm[inl][m1, m2] = dE_delta / dD^{inl}_{m1 m2},

enters the corrective Hamiltonian H_delta = Σ |α⟩ gedm ⟨α|.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import torch

from .descriptor import DescriptorEngine
from .units import HARTREE_TO_RYDBERG

Tensor = torch.Tensor

logger = logging.getLogger(__name__)

__all__ = ["CorrectionModel"]


class CorrectionModel:
    """Loaded-once, read-only correction model plus the outputs of its last evaluation."""

    def __init__(
        self,
        module: Optional[Callable[[Tensor], Tensor]] = None,
        *,
        energy_factor: float = HARTREE_TO_RYDBERG,
        device: torch.device | str = "cpu",
    ) -> None:
        self.module = module
        self.energy_factor = float(energy_factor)
        self.device = torch.device(device)
        self.e_delta: float = 0.0
        self.gedm: List[Tensor] = []
        if isinstance(module, torch.nn.Module):
            module.eval()

    def reset(self) -> None:
        """Drop the outputs of the last evaluation."""
        self.e_delta = 0.0
        self.gedm = []

    @property
    def is_loaded(self) -> bool:
        return self.module is not None

    def load(self, model_file: str | Path) -> bool:
        """Load a TorchScript model; on failure log the error and return ``False``.

        A failed load leaves the adapter unusable (``is_loaded`` is ``False``).
        """
        self.module = None
        try:
            module = torch.jit.load(str(model_file), map_location=self.device)
        except (RuntimeError, ValueError, OSError) as exc:
            logger.error("error loading the model from %s: %s", model_file, exc)
            return False
        module.eval()
        self.module = module
        logger.info("Loaded correction model from %s", model_file)
        return True

    def forward(self, descriptors: Tensor) -> Tensor:
        if self.module is None:
            raise RuntimeError("Correction model is not loaded; call load() and check its result")
        out = self.module(descriptors)
        if isinstance(out, (tuple, list)):
            out = out[0]
        if out.numel() != 1:
            raise ValueError(f"Correction model must return a scalar, got shape {tuple(out.shape)}")
        return out.reshape(())

    def evaluate(self, engine: DescriptorEngine, nat: int) -> float:
        """Compute E_delta (host unit) and gedm for the engine's current blocks.

        Blocks the model output does not depend on receive a zero gradient.
        """
        inputs = engine.descriptors(nat).to(self.device)
        ec = self.forward(inputs)  # Hartree
        if ec.requires_grad:
            grads = torch.autograd.grad(
                [ec],
                engine.pdm_tensors,
                grad_outputs=[torch.ones_like(ec)],
                retain_graph=True,
                create_graph=False,
                allow_unused=True,
            )
        else:
            # output independent of every block
            grads = [None] * len(engine.pdm_tensors)
        gedm: List[Tensor] = []
        for blk, g in zip(engine.pdm_tensors, grads):
            if g is None:
                g = torch.zeros_like(blk)
            gedm.append(g.detach() * self.energy_factor)
        self.e_delta = float(ec.detach().item()) * self.energy_factor
        self.gedm = gedm
        logger.debug("E_delta=%.10f (host unit), %d gedm blocks", self.e_delta, len(gedm))
        return self.e_delta

    def gedm_rows(self) -> List[np.ndarray]:
        """gedm in the host's flat ``nm*nm`` row format."""
        return [g.reshape(-1).cpu().numpy().copy() for g in self.gedm]
