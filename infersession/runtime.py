"""Runtime environment checks and device/dtype helpers."""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import torch


@functools.lru_cache(maxsize=1)
def is_torch_available() -> bool:
    """Check if PyTorch can be imported."""
    try:
        import torch  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_transformers_available() -> bool:
    """Check if Transformers can be imported."""
    try:
        import transformers  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    if not is_torch_available():
        return False
    import torch

    return torch.cuda.is_available()


def resolve_device(device: str) -> str:
    """Map "auto" to the best available device; pass anything else through."""
    if device != "auto":
        return device
    if is_cuda_available():
        return "cuda"
    import torch

    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return "mps"
    return "cpu"


def resolve_dtype(name: str) -> "torch.dtype":
    """Translate a dtype name (float16|bfloat16|float32) to a torch dtype."""
    import torch

    table = {
        "float16": torch.float16,
        "bfloat16": torch.bfloat16,
        "float32": torch.float32,
    }
    if name not in table:
        raise ValueError(f"Unsupported dtype: {name!r}. Expected float16|bfloat16|float32.")
    return table[name]


def check_backend_required() -> None:
    """Raise ImportError if the transformers backend cannot run."""
    if not is_torch_available() or not is_transformers_available():
        raise ImportError(
            "The transformers backend requires torch and transformers. "
            "Install them with: pip install torch transformers"
        )
