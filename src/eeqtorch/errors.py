from __future__ import annotations

"""Failure modes of the EEQ linear solve.

All three abort the call: no charges, energies or derivatives are returned.
"""

__all__ = ["EEQError", "FactorizationError", "InversionError", "SolveError"]


class EEQError(RuntimeError):
    """Base class for linear-algebra failures in the EEQ solver."""


class FactorizationError(EEQError):
    """Bunch-Kaufman (LDLᵀ) factorization of the augmented matrix failed."""


class InversionError(EEQError):
    """Inverting the factorized matrix failed (response path only)."""


class SolveError(EEQError):
    """Back-substitution against the factorization failed."""
