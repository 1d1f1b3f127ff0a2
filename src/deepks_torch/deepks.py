from __future__ import annotations

"""DeePKS facade: one descriptor and correction evaluation per geometry step.

Every rank builds the descriptors from its (already reduced) PDM blocks. The
position gradient, the correction model and the orbital precalc run on the
coordinator only and return ``None`` on the other ranks.
"""

import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import torch

from .blocks import BlockStore, ProjectorLayout
from .config import DeePKSConfig
from .context import SimulationContext
from .descriptor import DescriptorEngine
from .grad.position import descriptor_position_gradient
from .io.labels import save_labels, write_descriptor
from .jacobian import eigenvalue_jacobian
from .model import CorrectionModel
from .orbital import orbital_precalc, stack_orbital_pdm_shell
from .projection import orbital_pdm_shell
from .units import HARTREE_TO_RYDBERG

Tensor = torch.Tensor

logger = logging.getLogger(__name__)

__all__ = ["DeePKS"]


class DeePKS:
    """One DeePKS evaluation per geometry step.

    Typical host sequence::

        dk = DeePKS(ctx, layout)
        dk.load_model("model.ptg")
        dk.cal_descriptor(pdm_rows)        # every rank
        dk.cal_gedm()                      # coordinator: E_delta, gedm
        dk.cal_gvx(gdmx, gdmy, gdmz)       # coordinator: gvx

    Results are kept as attributes (``gevdm_vector``, ``gvx_tensor``, ``e_delta``,
    ``gedm``, ``orbital_precalc_tensor``). New PDM blocks or a new context drop
    all of them, so labels saved afterwards never mix two geometry steps.
    """

    def __init__(
        self,
        ctx: SimulationContext,
        layout: ProjectorLayout,
        *,
        model: Optional[CorrectionModel] = None,
        energy_factor: float = HARTREE_TO_RYDBERG,
        out_dir: Optional[str | Path] = None,
    ) -> None:
        if ctx.nat != layout.nat:
            raise ValueError(f"Atom count mismatch: context nat={ctx.nat}, layout nat={layout.nat}")
        self.ctx = ctx
        self.layout = layout
        self.engine = DescriptorEngine()
        self.model = model if model is not None else CorrectionModel(energy_factor=energy_factor, device=ctx.device)
        self.out_dir = Path(out_dir) if out_dir is not None else None
        self.gevdm_vector: List[Tensor] = []
        self.gvx_tensor: Optional[Tensor] = None
        self.orbital_precalc_tensor: Optional[Tensor] = None

    @classmethod
    def from_config(
        cls,
        cfg: DeePKSConfig,
        ctx: Optional[SimulationContext] = None,
        *,
        nat: Optional[int] = None,
    ) -> "DeePKS":
        """Build from a run configuration.

        The configured dtype replaces the context's; the configured device does too
        when one is set. Without a context, one is created for ``nat`` atoms.
        Labels are written by :meth:`finish` only when ``out_labels`` is set.
        """
        if ctx is None:
            if nat is None:
                raise ValueError("from_config needs either a context or the atom count")
            ctx = SimulationContext(nat=nat, dtype=cfg.torch_dtype, device=cfg.torch_device)
        else:
            overrides: Dict[str, Any] = {"dtype": cfg.torch_dtype}
            if cfg.device is not None:
                overrides["device"] = cfg.torch_device
            ctx = dataclasses.replace(ctx, **overrides)
        dk = cls(
            ctx,
            cfg.layout(ctx.nat),
            energy_factor=cfg.energy_factor,
            out_dir=cfg.out_dir if cfg.out_labels else None,
        )
        if cfg.model_file is not None:
            dk.load_model(cfg.model_file)
        return dk

    @property
    def des_per_atom(self) -> int:
        return self.layout.des_per_atom

    @property
    def e_delta(self) -> float:
        return self.model.e_delta

    @property
    def gedm(self) -> List[Tensor]:
        return self.model.gedm

    def set_context(self, ctx: SimulationContext) -> None:
        """Switch to a new geometry step; all derived tensors are dropped."""
        self.ctx = ctx
        if ctx.nat != self.layout.nat:
            self.layout = self.layout.with_nat(ctx.nat)
        self.engine.clear()
        self._drop_results()

    def _drop_results(self) -> None:
        self.gevdm_vector = []
        self.gvx_tensor = None
        self.orbital_precalc_tensor = None
        self.model.reset()

    # descriptors -----------------------------------------------------------

    def cal_descriptor(self, pdm: BlockStore | Sequence[Any]) -> Tensor:
        """Eigenvalue descriptors ``(nat, des_per_atom)`` from PDM blocks (store or host rows)."""
        if isinstance(pdm, BlockStore):
            store = pdm
            if store.layout != self.layout:
                raise ValueError(f"Block store layout {store.layout} does not match {self.layout}")
        else:
            store = BlockStore.from_rows(self.layout, pdm, dtype=self.ctx.dtype, device=self.ctx.device)
        self._drop_results()
        self.engine.compute(store)
        return self.engine.descriptors(self.ctx.nat).detach()

    def cal_gvdm(self) -> List[Tensor]:
        """d(descriptor)/d(PDM) per shell; always recomputed from the retained blocks."""
        if not self.engine.ready:
            raise RuntimeError("Descriptors are not available; call cal_descriptor() first")
        self.gevdm_vector = eigenvalue_jacobian(self.engine.pdm_tensors, self.layout)
        return self.gevdm_vector

    def cal_gvx(self, gdmx: Sequence, gdmy: Sequence, gdmz: Sequence) -> Optional[Tensor]:
        """Descriptor gradient w.r.t. positions, ``(nat, 3, nat, des_per_atom)`` on the coordinator."""
        self.cal_gvdm()
        self.gvx_tensor = descriptor_position_gradient(gdmx, gdmy, gdmz, self.gevdm_vector, self.layout, self.ctx)
        return self.gvx_tensor

    # correction model ------------------------------------------------------

    def load_model(self, model_file: str | Path) -> bool:
        return self.model.load(model_file)

    def cal_gedm(self) -> Optional[float]:
        """E_delta and dE_delta/d(PDM) on the coordinator; ``None`` elsewhere."""
        if not self.ctx.is_coordinator:
            logger.debug("Rank %d skips correction model evaluation", self.ctx.rank)
            return None
        if not self.model.is_loaded:
            raise RuntimeError("No correction model loaded; load_model() failed or was not called")
        return self.model.evaluate(self.engine, self.ctx.nat)

    # orbital precalc -------------------------------------------------------

    def cal_orbital_pdm_shell(self, dm_hl: Tensor, overlaps, *, mask: Optional[Tensor] = None) -> List[Tensor]:
        """Accumulate and sum-reduce the orbital PDM shell; every rank must call this."""
        return orbital_pdm_shell(dm_hl, overlaps, self.layout, mask=mask, ctx=self.ctx)

    def cal_orbital_precalc(self, orbital_pdm_shell_vector: Sequence) -> Optional[Tensor]:
        """Contract a reduced orbital PDM shell with gevdm → ``(nks, nat, des_per_atom)``.

        Accepts per-shell ``(nks, nat, nm, nm)`` tensors or host rows ``[nks][inl]``.
        """
        if not self.ctx.is_coordinator:
            logger.debug("Rank %d skips orbital precalc contraction", self.ctx.rank)
            return None
        if len(orbital_pdm_shell_vector) > 0 and not isinstance(orbital_pdm_shell_vector[0], Tensor):
            orbital_pdm_shell_vector = stack_orbital_pdm_shell(
                orbital_pdm_shell_vector, self.layout, dtype=self.ctx.dtype, device=self.ctx.device
            )
        self.cal_gvdm()
        self.orbital_precalc_tensor = orbital_precalc(orbital_pdm_shell_vector, self.gevdm_vector, self.layout)
        return self.orbital_precalc_tensor

    # output ----------------------------------------------------------------

    def write_descriptor(self, path: str | Path, symbols: Optional[Sequence[str]] = None) -> None:
        write_descriptor(path, self.engine.descriptors(self.ctx.nat), self.layout, symbols=symbols)

    def save_labels(self, out_dir: str | Path) -> dict:
        """Write available labels on the coordinator (no-op elsewhere)."""
        if not self.ctx.is_coordinator:
            return {}
        written = save_labels(
            out_dir,
            descriptor=self.engine.descriptors(self.ctx.nat) if self.engine.ready else None,
            e_delta=self.model.e_delta if self.model.gedm else None,
            gvx=self.gvx_tensor,
            orbital_precalc=self.orbital_precalc_tensor,
        )
        logger.info("Saved DeePKS labels: %s", ", ".join(sorted(written)))
        return written

    def finish(self) -> dict:
        """End of a geometry step: save the labels to the configured ``out_dir``, if any."""
        if self.out_dir is None:
            return {}
        return self.save_labels(self.out_dir)
