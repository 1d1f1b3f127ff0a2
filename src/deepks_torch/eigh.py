from __future__ import annotations

"""Symmetric eigen-decomposition with reverse-mode gradient.

Single entry point for every eigen-decomposition in the package. The backward pass
is PyTorch's own ``linalg.eigh`` derivative; for eigenvalues only it reduces to
dλ_k/dA = v_k v_kᵀ, which :func:`eigenvalue_gradient_closed_form` exposes for
checks. Near-degenerate spectra use PyTorch's subgradient convention unchanged.

Ordering: eigenvalues are ascending as returned by LAPACK/cuSOLVER. No tie-break
is imposed between degenerate eigenvalues.
"""

from typing import Tuple

import torch

Tensor = torch.Tensor

__all__ = [
    "EigenDecompositionError",
    "symeig",
    "symeigvals",
    "eigenvalue_gradient_closed_form",
]


class EigenDecompositionError(RuntimeError):
    """Eigen-decomposition of a PDM block failed; the evaluation must not continue."""


def symeig(a: Tensor, uplo: str = "U") -> Tuple[Tensor, Tensor]:
    """Return ``(evals, evecs)`` of the symmetric matrix (batch) ``a``.

    Only the ``uplo`` triangle is read, so a slightly asymmetric input is
    decomposed as its symmetrised triangle rather than rejected.
    """
    if a.dim() < 2 or a.shape[-1] != a.shape[-2]:
        raise ValueError(f"symeig expects square matrices, got shape {tuple(a.shape)}")
    try:
        evals, evecs = torch.linalg.eigh(a, UPLO=uplo)
    except torch.linalg.LinAlgError as exc:
        raise EigenDecompositionError(f"eigh failed to converge for block of shape {tuple(a.shape)}: {exc}") from exc
    if not torch.isfinite(evals).all():
        raise EigenDecompositionError(f"eigh returned non-finite eigenvalues for block of shape {tuple(a.shape)}")
    return evals, evecs


def symeigvals(a: Tensor, uplo: str = "U") -> Tensor:
    """Eigenvalues only; differentiable w.r.t. ``a``."""
    evals, _ = symeig(a, uplo=uplo)
    return evals


def eigenvalue_gradient_closed_form(a: Tensor, uplo: str = "U") -> Tensor:
    """Analytic Jacobian dλ_v/dA_mn = V_mv V_nv, shape (..., nm, nm, nm) = (v, m, n)."""
    with torch.no_grad():
        _, evecs = symeig(a.detach(), uplo=uplo)
    return torch.einsum("...mv,...nv->...vmn", evecs, evecs)
