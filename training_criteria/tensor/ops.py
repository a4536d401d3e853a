# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Tensor Operations
# ════════════════════════════════════════════════════════════════════════════════
# The slice of the numeric engine the criterion nodes rely on, expressed as
# pure functions over 2-D torch tensors. Functions named add_* accumulate
# into their last argument; nothing here allocates node state.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging
from typing import Union

import torch
from torch import Tensor

from training_criteria.core.types import LSMALL, LZERO, MINLOGEXP

logger = logging.getLogger(__name__)

Device = Union[str, torch.device]


# ═════════════════════════════════════════════════════════════════════════════════
# Log-Space Arithmetic
# ═════════════════════════════════════════════════════════════════════════════════

def log_add_elementwise(x: Tensor, y: Tensor) -> Tensor:
    """
    Numerically stable log(exp(x) + exp(y)), element by element.

    Where both operands are below LSMALL the result is LZERO, so sums of
    log(0) stand-ins stay at LZERO instead of drifting upward.
    """
    hi = torch.maximum(x, y)
    lo = torch.minimum(x, y)
    diff = lo - hi
    # clamp keeps exp() finite in the branch torch.where discards
    summed = hi + torch.log1p(torch.exp(torch.clamp(diff, min=MINLOGEXP)))
    result = torch.where(diff < MINLOGEXP, hi, summed)
    return torch.where(hi < LSMALL, torch.full_like(hi, LZERO), result)


def log_add_sum(values: Tensor) -> float:
    """log(sum(exp(values))) over every element of values."""
    result = torch.logsumexp(values.reshape(-1), dim=0).item()
    return LZERO if result < LSMALL else result


# ═════════════════════════════════════════════════════════════════════════════════
# Reductions
# ═════════════════════════════════════════════════════════════════════════════════

def inner_product(a: Tensor, b: Tensor) -> Tensor:
    """Frobenius inner product sum(a * b) as a 0-d tensor."""
    return torch.sum(a * b)


def frobenius_norm(a: Tensor) -> Tensor:
    return torch.linalg.vector_norm(a)


def matrix_norm1(a: Tensor) -> Tensor:
    """Sum of absolute values of all elements."""
    return torch.sum(torch.abs(a))


# ═════════════════════════════════════════════════════════════════════════════════
# Accumulating Updates
# ═════════════════════════════════════════════════════════════════════════════════

def add_with_scale_of(alpha: float, a: Tensor, c: Tensor) -> None:
    """c += alpha * a"""
    c.add_(a, alpha=alpha)


def add_scaled_difference(alpha: float, a: Tensor, b: Tensor, c: Tensor) -> None:
    """c += alpha * (a - b)"""
    c.add_(a - b, alpha=alpha)


def minus_one_at(c: Tensor, index: int) -> None:
    """Subtract 1 from the index-th element of the 1-D view c, in place."""
    c[index] -= 1


def assign_sign_of(target: Tensor, a: Tensor) -> Tensor:
    """target = sign(a), resizing target if needed."""
    if target.shape != a.shape:
        target.resize_(a.shape)
    torch.sign(a, out=target)
    return target


def upstream_scalar(gradient: Tensor) -> float:
    """The scalar upstream gradient of a 1x1 criterion output."""
    return float(gradient.reshape(-1)[0].item())


# ═════════════════════════════════════════════════════════════════════════════════
# Device Placement & Diagnostics
# ═════════════════════════════════════════════════════════════════════════════════

def transfer_to_device(
    tensor: Tensor,
    device: Device,
    force: bool = False,
) -> Tensor:
    """
    Return tensor resident on device.

    A tensor already on device is returned as is unless force is set, in
    which case a fresh copy is made.
    """
    target = torch.device(device)
    if tensor.device == target and not force:
        return tensor
    logger.debug(f"Moving tensor {tuple(tensor.shape)} from {tensor.device} to {target}")
    return tensor.to(target, copy=True)


def has_nan(tensor: Tensor) -> bool:
    """True if tensor holds any NaN or Inf."""
    return not bool(torch.isfinite(tensor).all())


__all__ = [
    "log_add_elementwise",
    "log_add_sum",
    "inner_product",
    "frobenius_norm",
    "matrix_norm1",
    "add_with_scale_of",
    "add_scaled_difference",
    "minus_one_at",
    "assign_sign_of",
    "upstream_scalar",
    "transfer_to_device",
    "has_nan",
]
