from __future__ import annotations

from typing import Optional

import torch

__all__ = ["get_device", "resolve_dtype"]

_DTYPES = {
    "float64": torch.float64,
    "double": torch.float64,
    "float32": torch.float32,
    "float": torch.float32,
}


def get_device(prefer: Optional[str] = None) -> torch.device:
    """
    Choose a torch device with a simple preference policy.
    prefer: one of {"cuda", "mps", "cpu"} or None to auto.

    MPS has no float64 support, so it is only used when asked for explicitly.
    """
    if prefer == "cuda" and torch.cuda.is_available():
        return torch.device("cuda")
    if prefer == "mps" and torch.backends.mps.is_available():
        return torch.device("mps")
    if prefer is None and torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def resolve_dtype(name: str | torch.dtype) -> torch.dtype:
    if isinstance(name, torch.dtype):
        return name
    try:
        return _DTYPES[name.lower()]
    except KeyError:
        raise ValueError(f"Unsupported dtype {name!r}; expected one of {sorted(_DTYPES)}") from None
