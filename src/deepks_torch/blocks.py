from __future__ import annotations

"""Projector layout and the projected density matrix (PDM) block store.

Index conventions (shared by every module of the package):
 - ``nl`` enumerates projector shells of one atom, radial index inner and
   angular momentum outer, so every atom carries the same ``nlmax`` shells.
 - ``inl = iat * nlmax + nl`` is the flat projector index used by the host.
 - A shell with angular momentum ``l`` carries ``nm = 2l + 1`` magnetic channels,
   hence PDM blocks of shape ``(nm, nm)``.

Blocks are stored as one arena tensor per shell of shape ``(nat, nm, nm)``.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Sequence, Tuple

import numpy as np
import torch

Tensor = torch.Tensor

__all__ = ["ProjectorLayout", "BlockStore", "iter_inl"]


@dataclass(frozen=True)
class ProjectorLayout:
    """Angular momentum per projector shell, replicated over ``nat`` atoms."""

    nat: int
    shell_l: Tuple[int, ...]

    def __post_init__(self) -> None:
        if self.nat <= 0:
            raise ValueError(f"nat must be positive, got {self.nat}")
        if len(self.shell_l) == 0:
            raise ValueError("At least one projector shell is required")
        if any(l < 0 for l in self.shell_l):
            raise ValueError(f"Angular momenta must be non-negative, got {self.shell_l}")

    @classmethod
    def from_inl_l(cls, inl_l: Sequence[int], nat: int) -> "ProjectorLayout":
        """Build from the host's flat ``inl_l`` array (length ``nat * nlmax``)."""
        inl_l = [int(l) for l in inl_l]
        if nat <= 0 or len(inl_l) % nat != 0:
            raise ValueError(f"len(inl_l)={len(inl_l)} is not a multiple of nat={nat}")
        nlmax = len(inl_l) // nat
        shell_l = tuple(inl_l[:nlmax])
        for iat in range(1, nat):
            row = tuple(inl_l[iat * nlmax:(iat + 1) * nlmax])
            if row != shell_l:
                raise ValueError(
                    f"Atom {iat} has shell angular momenta {row}, expected {shell_l}; "
                    "all atoms must share the projector shells"
                )
        return cls(nat=nat, shell_l=shell_l)

    @classmethod
    def from_nchi(cls, nchi: Sequence[int], nat: int) -> "ProjectorLayout":
        """Build from radial counts per angular momentum, e.g. ``(2, 2, 1)`` for s, p, d."""
        shell_l: List[int] = []
        for l, n in enumerate(nchi):
            if n < 0:
                raise ValueError(f"Negative radial count for L={l}: {n}")
            shell_l.extend([l] * int(n))
        return cls(nat=nat, shell_l=tuple(shell_l))

    @property
    def nlmax(self) -> int:
        return len(self.shell_l)

    @property
    def inlmax(self) -> int:
        return self.nat * self.nlmax

    @property
    def inl_l(self) -> Tuple[int, ...]:
        return self.shell_l * self.nat

    @property
    def des_per_atom(self) -> int:
        return sum(2 * l + 1 for l in self.shell_l)

    def nm(self, nl: int) -> int:
        return 2 * self.shell_l[nl] + 1

    def inl(self, iat: int, nl: int) -> int:
        return iat * self.nlmax + nl

    def split_inl(self, inl: int) -> Tuple[int, int]:
        """Return ``(iat, nl)`` for a flat projector index."""
        if not (0 <= inl < self.inlmax):
            raise IndexError(f"inl={inl} outside [0, {self.inlmax})")
        return divmod(inl, self.nlmax)

    def shell_offsets(self) -> List[int]:
        """Offset of each shell inside one atom's descriptor vector."""
        out, off = [], 0
        for l in self.shell_l:
            out.append(off)
            off += 2 * l + 1
        return out

    def with_nat(self, nat: int) -> "ProjectorLayout":
        return ProjectorLayout(nat=nat, shell_l=self.shell_l)


class BlockStore:
    """Arena of symmetric PDM blocks indexed by ``(atom, shell)``.

    All inputs are copied; the store never aliases caller memory.
    """

    def __init__(self, layout: ProjectorLayout, *, dtype: torch.dtype = torch.float64, device: torch.device | str = "cpu") -> None:
        self.layout = layout
        self.dtype = dtype
        self.device = torch.device(device)
        self._shells: List[Tensor] = [
            torch.zeros((layout.nat, layout.nm(nl), layout.nm(nl)), dtype=dtype, device=self.device)
            for nl in range(layout.nlmax)
        ]

    @classmethod
    def from_rows(
        cls,
        layout: ProjectorLayout,
        rows: Sequence[Sequence[float] | np.ndarray | Tensor],
        **kwargs,
    ) -> "BlockStore":
        """Build from the host format: one flat row-major ``nm*nm`` row per ``inl``.

        A row may also be given already shaped ``(nm, nm)``.
        """
        if len(rows) != layout.inlmax:
            raise ValueError(f"Expected {layout.inlmax} PDM rows, got {len(rows)}")
        store = cls(layout, **kwargs)
        for inl, row in enumerate(rows):
            iat, nl = layout.split_inl(inl)
            store.set_block(iat, nl, row)
        return store

    @classmethod
    def from_shell_tensors(cls, layout: ProjectorLayout, shells: Sequence[Tensor], **kwargs) -> "BlockStore":
        if len(shells) != layout.nlmax:
            raise ValueError(f"Expected {layout.nlmax} shell tensors, got {len(shells)}")
        store = cls(layout, **kwargs)
        for nl, t in enumerate(shells):
            store.set_shell(nl, t)
        return store

    def _as_block(self, value, nm: int) -> Tensor:
        t = torch.as_tensor(value, dtype=self.dtype, device=self.device)
        if t.numel() != nm * nm:
            raise ValueError(f"PDM block has {t.numel()} entries, expected {nm}x{nm}")
        return t.detach().reshape(nm, nm).clone()

    def set_block(self, iat: int, nl: int, value) -> None:
        nm = self.layout.nm(nl)
        self._shells[nl][iat] = self._as_block(value, nm)

    def add_block(self, iat: int, nl: int, value) -> None:
        nm = self.layout.nm(nl)
        self._shells[nl][iat] += self._as_block(value, nm)

    def set_shell(self, nl: int, value: Tensor) -> None:
        nm = self.layout.nm(nl)
        expected = (self.layout.nat, nm, nm)
        t = torch.as_tensor(value, dtype=self.dtype, device=self.device)
        if tuple(t.shape) != expected:
            raise ValueError(f"Shell {nl} tensor has shape {tuple(t.shape)}, expected {expected}")
        self._shells[nl] = t.detach().clone()

    def block(self, iat: int, nl: int) -> Tensor:
        return self._shells[nl][iat]

    def __getitem__(self, inl: int) -> Tensor:
        iat, nl = self.layout.split_inl(inl)
        return self.block(iat, nl)

    def __len__(self) -> int:
        return self.layout.inlmax

    def __iter__(self) -> Iterator[Tensor]:
        for inl in range(self.layout.inlmax):
            yield self[inl]

    def shell(self, nl: int) -> Tensor:
        """View of all atoms' blocks for shell ``nl``: ``(nat, nm, nm)``."""
        return self._shells[nl]

    def shells(self) -> List[Tensor]:
        return list(self._shells)

    def rows(self) -> List[np.ndarray]:
        """Flat ``nm*nm`` rows per ``inl`` (host format)."""
        return [b.reshape(-1).cpu().numpy().copy() for b in self]

    def copy(self) -> "BlockStore":
        return BlockStore.from_shell_tensors(self.layout, self._shells, dtype=self.dtype, device=self.device)

    def zero_(self) -> "BlockStore":
        for t in self._shells:
            t.zero_()
        return self

def iter_inl(layout: ProjectorLayout) -> Iterable[Tuple[int, int, int]]:
    """Yield ``(inl, iat, nl)`` in flat projector order."""
    for iat in range(layout.nat):
        for nl in range(layout.nlmax):
            yield layout.inl(iat, nl), iat, nl
