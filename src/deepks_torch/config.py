from __future__ import annotations

"""TOML run configuration.

Example::

    [deepks]
    model_file = "model.ptg"
    nchi = [2, 2, 1]          # radial projectors per L (s, p, d)
    energy_unit = "Hartree"   # unit the model was trained in
    host_unit = "Rydberg"
    device = "cpu"
    dtype = "float64"
    out_labels = true
    out_dir = "OUT.deepks"
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import torch

try:
    import tomllib as _toml
except Exception:  # pragma: no cover
    import tomli as _toml  # type: ignore

from .blocks import ProjectorLayout
from .device import get_device, resolve_dtype
from .units import energy_factor

__all__ = ["DeePKSConfig", "load_config", "config_from_dict"]

_KEYS = {
    "model_file", "nchi", "inl_l", "energy_unit", "host_unit",
    "device", "dtype", "out_labels", "out_dir",
}


@dataclass(frozen=True)
class DeePKSConfig:
    model_file: Optional[Path] = None
    nchi: Optional[Tuple[int, ...]] = None
    inl_l: Optional[Tuple[int, ...]] = None
    energy_unit: str = "Hartree"
    host_unit: str = "Rydberg"
    device: Optional[str] = None
    dtype: str = "float64"
    out_labels: bool = False
    out_dir: Path = Path("OUT.deepks")

    @property
    def energy_factor(self) -> float:
        return energy_factor(self.energy_unit, self.host_unit)

    @property
    def torch_dtype(self) -> torch.dtype:
        return resolve_dtype(self.dtype)

    @property
    def torch_device(self) -> torch.device:
        return get_device(self.device)

    def layout(self, nat: int) -> ProjectorLayout:
        if self.nchi is not None:
            return ProjectorLayout.from_nchi(self.nchi, nat)
        if self.inl_l is not None:
            return ProjectorLayout.from_inl_l(self.inl_l, nat)
        raise ValueError("Configuration defines neither 'nchi' nor 'inl_l'")


def _int_tuple(key: str, value: Any) -> Tuple[int, ...]:
    if not isinstance(value, list) or not all(isinstance(v, int) for v in value):
        raise ValueError(f"'{key}' must be a list of integers, got {value!r}")
    return tuple(int(v) for v in value)


def config_from_dict(data: Dict[str, Any], base_dir: Path | None = None) -> DeePKSConfig:
    """Validate the ``[deepks]`` table; relative paths resolve against ``base_dir``."""
    unknown = set(data) - _KEYS
    if unknown:
        raise ValueError(f"Unknown keys in [deepks] section: {sorted(unknown)}")
    if "nchi" in data and "inl_l" in data:
        raise ValueError("Specify either 'nchi' or 'inl_l', not both")
    base = base_dir or Path(".")

    def path(key: str) -> Optional[Path]:
        if key not in data:
            return None
        if not isinstance(data[key], str):
            raise ValueError(f"'{key}' must be a string path")
        p = Path(data[key])
        return p if p.is_absolute() else base / p

    for key in ("energy_unit", "host_unit", "dtype", "device"):
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'{key}' must be a string, got {data[key]!r}")
    if "out_labels" in data and not isinstance(data["out_labels"], bool):
        raise ValueError("'out_labels' must be a boolean")

    cfg = DeePKSConfig(
        model_file=path("model_file"),
        nchi=_int_tuple("nchi", data["nchi"]) if "nchi" in data else None,
        inl_l=_int_tuple("inl_l", data["inl_l"]) if "inl_l" in data else None,
        energy_unit=data.get("energy_unit", "Hartree"),
        host_unit=data.get("host_unit", "Rydberg"),
        device=data.get("device"),
        dtype=data.get("dtype", "float64"),
        out_labels=data.get("out_labels", False),
        out_dir=path("out_dir") or base / "OUT.deepks",
    )
    # fail early on bad names
    resolve_dtype(cfg.dtype)
    _ = cfg.energy_factor
    return cfg


def load_config(path: str | Path) -> DeePKSConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"DeePKS configuration not found: {p}")
    with p.open("rb") as fh:
        data = _toml.load(fh)
    if "deepks" not in data:
        raise ValueError(f"Missing [deepks] section in {p}")
    return config_from_dict(data["deepks"], base_dir=p.parent)
