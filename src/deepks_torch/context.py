from __future__ import annotations

"""Explicit simulation context passed into every DeePKS component.

Replaces ambient simulation state (atom count, process rank, parallel reduction)
with one object the host builds per geometry step.
"""

from dataclasses import dataclass, field, replace
from typing import Callable

import torch

Tensor = torch.Tensor

__all__ = ["SimulationContext", "identity_reduce"]


def identity_reduce(t: Tensor) -> Tensor:
    """Sum-reduction for a single process: nothing to add."""
    return t


@dataclass(frozen=True)
class SimulationContext:
    """
    nat : number of atoms in the cell
    rank, nproc : position in the process group of the host
    reduce_sum : in-place-free all-reduce (sum) over the process group; it acts as
                 the barrier preceding coordinator-only contractions
    """

    nat: int
    rank: int = 0
    nproc: int = 1
    reduce_sum: Callable[[Tensor], Tensor] = field(default=identity_reduce, repr=False, compare=False)
    dtype: torch.dtype = torch.float64
    device: torch.device = field(default_factory=lambda: torch.device("cpu"))

    def __post_init__(self) -> None:
        if self.nat <= 0:
            raise ValueError(f"nat must be positive, got {self.nat}")
        if self.nproc <= 0 or not (0 <= self.rank < self.nproc):
            raise ValueError(f"Invalid process placement rank={self.rank}, nproc={self.nproc}")

    @property
    def is_coordinator(self) -> bool:
        # lowest rank performs gathered contractions and model evaluation
        return self.rank == 0

    def with_nat(self, nat: int) -> "SimulationContext":
        return replace(self, nat=nat)
