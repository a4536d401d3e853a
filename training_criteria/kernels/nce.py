# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Noise-Contrastive Estimation Kernels
# ════════════════════════════════════════════════════════════════════════════════
# Objective and derivative routines of the NCE criterion plus its two
# evaluation-time alternatives (exact soft-max, unnormalized score).
#
# Shapes (H hidden units, V vocabulary, T columns, K samples per column):
#   labels   2K x T   rows 2k: word index, rows 2k+1: noise log-probability
#   hidden   H x T
#   weight   H x V
#   bias     1 x V
#
# Sample 0 of every column is the observed word; its log-probability is
# stored as is. Noise samples store the negated log-probability.
#
# `missing` is an optional boolean vector over columns; flagged columns
# contribute nothing to outputs or gradients.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import math
from typing import Optional

import torch
from torch import Tensor

from training_criteria.core.types import LZERO
from training_criteria.tensor.ops import log_add_elementwise


def _keep(missing: Optional[Tensor], like: Tensor) -> Tensor:
    if missing is None:
        return torch.ones(like.shape[-1], dtype=like.dtype, device=like.device)
    return (~missing).to(dtype=like.dtype, device=like.device)


def _sample_scores(words: Tensor, hidden: Tensor, weight: Tensor, bias: Tensor) -> Tensor:
    """score[k, t] = bias[words[k, t]] + <hidden[:, t], weight[:, words[k, t]]>"""
    # weight[:, words] is H x K x T
    projected = (weight[:, words] * hidden.unsqueeze(1)).sum(dim=0)
    return projected + bias[0, words]


# ═════════════════════════════════════════════════════════════════════════════════
# Training Objective
# ═════════════════════════════════════════════════════════════════════════════════

def noise_contrastive_estimation(
    labels: Tensor,
    hidden: Tensor,
    weight: Tensor,
    bias: Tensor,
    prediction: Tensor,
    missing: Optional[Tensor] = None,
) -> float:
    """
    Negative NCE log-likelihood of the minibatch.

    prediction (K x T) is overwritten with [k == 0] - exp(logp[k, t]), the
    per-sample factor the derivative routine scales by.
    """
    num_samples = labels.shape[0] // 2
    words = labels[0::2].long()
    log_q = -labels[1::2]
    log_q[0] = -log_q[0]

    log_num_noise = math.log(num_samples - 1) if num_samples > 1 else LZERO
    scores = _sample_scores(words, hidden, weight, bias)
    noise = log_q + log_num_noise
    z = log_add_elementwise(scores, noise)
    log_p = scores - z

    keep = _keep(missing, labels)
    pred = -torch.exp(log_p)
    pred[0] += 1
    prediction.resize_(pred.shape)
    prediction.copy_(pred * keep)

    log_likelihood = log_p[0] + (noise[1:] - z[1:]).sum(dim=0)
    return -float(torch.sum(log_likelihood * keep).item())


def nce_derivative(
    input_index: int,
    prediction: Tensor,
    labels: Tensor,
    hidden: Tensor,
    weight: Tensor,
    target_gradient: Tensor,
    scale: float,
) -> None:
    """
    Accumulate scale * d(-loglik)/d(input) into target_gradient.

    input_index 1 is hidden, 2 is weight, 3 is bias.
    """
    words = labels[0::2].long()
    factor = prediction * scale

    if input_index == 1:
        target_gradient.sub_((weight[:, words] * factor.unsqueeze(0)).sum(dim=1))
    elif input_index == 2:
        contributions = hidden.unsqueeze(1) * factor.unsqueeze(0)
        target_gradient.index_add_(
            1, words.reshape(-1), -contributions.reshape(hidden.shape[0], -1)
        )
    elif input_index == 3:
        target_gradient.index_add_(1, words.reshape(-1), -factor.reshape(1, -1))
    else:
        raise ValueError(f"NCE derivative is defined for inputs 1, 2 and 3, got {input_index}")


# ═════════════════════════════════════════════════════════════════════════════════
# Evaluation Modes
# ═════════════════════════════════════════════════════════════════════════════════

def softmax_sum(
    labels: Tensor,
    hidden: Tensor,
    weight: Tensor,
    bias: Tensor,
    log_softmax: Tensor,
    missing: Optional[Tensor] = None,
) -> float:
    """
    Exact cross entropy over the full vocabulary.

    log_softmax is filled with the T x V row-wise log-soft-max of
    hidden^T * weight + bias.
    """
    logits = hidden.t() @ weight + bias
    log_softmax.resize_(logits.shape)
    log_softmax.copy_(torch.log_softmax(logits, dim=1))

    words = labels[0].long()
    picked = log_softmax.gather(1, words.unsqueeze(1)).squeeze(1)
    return -float(torch.sum(picked * _keep(missing, labels)).item())


def nce_unnormalized_eval(
    labels: Tensor,
    hidden: Tensor,
    weight: Tensor,
    bias: Tensor,
    missing: Optional[Tensor] = None,
) -> float:
    """Negative sum of raw scores; labels hold negated word indices."""
    words = (-labels[0:1]).long()
    scores = _sample_scores(words, hidden, weight, bias)[0]
    return -float(torch.sum(scores * _keep(missing, labels)).item())


__all__ = [
    "noise_contrastive_estimation",
    "nce_derivative",
    "softmax_sum",
    "nce_unnormalized_eval",
]
