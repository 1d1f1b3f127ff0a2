"""Energy units at the model boundary.

Correction models are trained in Hartree; the host works in Rydberg.
"""
from __future__ import annotations

import ase.units

__all__ = ["HARTREE_TO_RYDBERG", "energy_factor"]

HARTREE_TO_RYDBERG = ase.units.Hartree / ase.units.Rydberg


def energy_factor(model_unit: str = "Hartree", host_unit: str = "Rydberg") -> float:
    """Multiplicative factor taking energies from ``model_unit`` to ``host_unit``.

    Any unit name known to ``ase.units`` is accepted (e.g. "Hartree", "Rydberg", "eV").
    """
    try:
        return float(getattr(ase.units, model_unit) / getattr(ase.units, host_unit))
    except AttributeError as exc:
        raise ValueError(f"Unknown energy unit in ({model_unit!r}, {host_unit!r})") from exc
