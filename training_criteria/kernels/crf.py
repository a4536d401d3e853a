# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Linear-Chain CRF Forward-Backward
# ════════════════════════════════════════════════════════════════════════════════
# Log-space dynamic program behind the sequence CRF criterion.
#
# Notation (L labels, T positions of one sequence):
#   pos[k, t]    position-dependent (emission) score of label k at t
#   pair[k, j]   transition score from label j to label k
#   alpha[k, t]  log-sum of scores of all paths ending in k at t
#   beta[k, t]   log marginal posterior of label k at t
#
# The path entering position 0 starts from the gold first label, i.e. the
# predecessor vector at t=0 is 0 at first_label and LZERO elsewhere.
#
# Every function takes all state as explicit arguments and writes results
# into caller-owned tensors.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

from typing import Tuple

import torch
from torch import Tensor

from training_criteria.core.errors import LabelError
from training_criteria.core.types import LZERO
from training_criteria.tensor.ops import log_add_sum


def active_label(lbls: Tensor, t: int) -> int:
    """Row of the first non-zero entry in column t, -1 if the column is empty."""
    nonzero = torch.nonzero(lbls[:, t], as_tuple=False)
    return int(nonzero[0, 0].item()) if nonzero.numel() > 0 else -1


def start_vector(num_labels: int, first_label: int, like: Tensor) -> Tensor:
    """Log-space predecessor vector of position 0."""
    prev = torch.full((num_labels,), LZERO, dtype=like.dtype, device=like.device)
    if first_label >= 0:
        prev[first_label] = 0.0
    return prev


def forward_compute(
    alpha: Tensor,
    lbls: Tensor,
    pos_scores: Tensor,
    pair_scores: Tensor,
) -> None:
    """
    Fill alpha in place.

    alpha[k, t] = pos[k, t] + logsumexp_j(prev[j] + pair[k, j])
    """
    num_labels, num_pos = lbls.shape
    prev = start_vector(num_labels, active_label(lbls, 0), pos_scores)

    for t in range(num_pos):
        # scores[k, j] = prev[j] + pair[k, j]
        scores = prev.unsqueeze(0) + pair_scores
        alpha[:, t] = torch.logsumexp(scores, dim=1) + pos_scores[:, t]
        prev = alpha[:, t]


def backward_compute(
    alpha: Tensor,
    beta: Tensor,
    pair_scores: Tensor,
) -> None:
    """
    Fill beta in place with log marginal posteriors.

    beta[k, T-1] = alpha[k, T-1] - logsumexp_j alpha[j, T-1]
    beta[k, t]   = logsumexp_j( beta[j, t+1] + alpha[k, t] + pair[j, k]
                                - logsumexp_m(alpha[m, t] + pair[j, m]) )
    """
    num_pos = alpha.shape[1]
    last = alpha[:, num_pos - 1]
    beta[:, num_pos - 1] = last - torch.logsumexp(last, dim=0)

    for t in range(num_pos - 2, -1, -1):
        # joint[j, k] = alpha[k, t] + pair[j, k]
        joint = alpha[:, t].unsqueeze(0) + pair_scores
        # conditional log P(y_t = k | y_{t+1} = j)
        conditional = joint - torch.logsumexp(joint, dim=1, keepdim=True)
        beta[:, t] = torch.logsumexp(conditional + beta[:, t + 1].unsqueeze(1), dim=0)


def post_prob_compute(postprob: Tensor, beta: Tensor) -> None:
    postprob.copy_(torch.exp(beta))


def gold_path_score(
    lbls: Tensor,
    pos_scores: Tensor,
    pair_scores: Tensor,
) -> Tuple[float, int, int]:
    """
    Score of the labelled path, including the start edge into position 0.

    Returns:
        (score, first_label, last_label)
    """
    num_pos = lbls.shape[1]
    score = torch.sum(lbls * pos_scores).item()

    first_label = active_label(lbls, 0)
    prev = first_label
    for t in range(num_pos):
        cur = active_label(lbls, t)
        if cur < 0:
            raise LabelError(
                message="Every position of a CRF sequence needs an active label",
                operation="CRF",
                column=t,
            )
        score += pair_scores[cur, prev].item()
        prev = cur
    return score, first_label, prev


def evaluate_sequence(
    postprob: Tensor,
    alpha: Tensor,
    beta: Tensor,
    lbls: Tensor,
    pos_scores: Tensor,
    pair_scores: Tensor,
) -> Tuple[float, int, int]:
    """
    Run forward-backward on one sequence.

    Returns:
        (negative log-likelihood, first_label, last_label)
    """
    forward_compute(alpha, lbls, pos_scores, pair_scores)
    backward_compute(alpha, beta, pair_scores)
    post_prob_compute(postprob, beta)

    score, first_label, last_label = gold_path_score(lbls, pos_scores, pair_scores)
    log_partition = log_add_sum(alpha[:, -1])
    return -(score - log_partition), first_label, last_label


def trans_grad_compute(
    lbls: Tensor,
    alpha: Tensor,
    beta: Tensor,
    pair_scores: Tensor,
    grd: Tensor,
    scale: float,
) -> None:
    """
    Accumulate scale * d(NLL)/d(pair) into grd.

    For each position the edge marginal is
        P(y_{t-1} = j, y_t = k) = exp(prev[j] + pair[k, j]
                                      - logsumexp_m(prev[m] + pair[k, m]) + beta[k, t])
    and the gold edge is subtracted.
    """
    num_labels, num_pos = lbls.shape
    first_label = active_label(lbls, 0)
    prev = start_vector(num_labels, first_label, alpha)
    prev_label = first_label

    for t in range(num_pos):
        joint = prev.unsqueeze(0) + pair_scores
        conditional = joint - torch.logsumexp(joint, dim=1, keepdim=True)
        marginal = torch.exp(conditional + beta[:, t].unsqueeze(1))
        grd.add_(marginal, alpha=scale)

        cur_label = active_label(lbls, t)
        grd[cur_label, prev_label] -= scale

        prev = alpha[:, t]
        prev_label = cur_label


def position_grad_compute(
    lbls: Tensor,
    postprob: Tensor,
    grd: Tensor,
    scale: float,
) -> None:
    """grd += scale * (postprob - lbls)"""
    grd.add_(postprob - lbls, alpha=scale)


__all__ = [
    "active_label",
    "forward_compute",
    "backward_compute",
    "post_prob_compute",
    "gold_path_score",
    "evaluate_sequence",
    "trans_grad_compute",
    "position_grad_compute",
]
