from __future__ import annotations

from typing import Optional, Union

import torch

__all__ = ["get_device", "resolve_dtype", "set_default_dtype"]

_DTYPES = {
    "float32": torch.float32,
    "float64": torch.float64,
    "single": torch.float32,
    "double": torch.float64,
}


def get_device(prefer: Optional[str] = None) -> torch.device:
    """
    Choose a torch device.
    prefer: one of {"cuda", "cpu"} or None to auto. A requested but unavailable
    accelerator falls back to the CPU.
    """
    if prefer is not None and prefer not in ("cuda", "cpu"):
        raise ValueError(f"Unknown device preference {prefer!r}; expected 'cuda', 'cpu' or None")
    if prefer in (None, "cuda") and torch.cuda.is_available():
        return torch.device("cuda")
    return torch.device("cpu")


def resolve_dtype(dtype: Union[str, torch.dtype]) -> torch.dtype:
    """Accept a torch floating dtype or its name ("float64", "double", ...)."""
    if isinstance(dtype, torch.dtype):
        if not dtype.is_floating_point:
            raise ValueError(f"dtype must be floating point, got {dtype}")
        return dtype
    try:
        return _DTYPES[str(dtype).lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown dtype {dtype!r}; expected one of {sorted(_DTYPES)}") from exc


def set_default_dtype(dtype: Union[str, torch.dtype] = torch.float64) -> torch.dtype:
    dt = resolve_dtype(dtype)
    torch.set_default_dtype(dt)
    return dt
