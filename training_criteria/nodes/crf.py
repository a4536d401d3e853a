# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Sequence CRF
# ════════════════════════════════════════════════════════════════════════════════
# Negative log-likelihood of a linear-chain CRF, summed over the parallel
# sequences of a minibatch.
#
# Inputs:
#   0: label           L x N one-hot columns
#   1: position score  L x N
#   2: pair score      L x L, pair[k, j] scores the transition j -> k
#
# Sequence i occupies the column stride [i * N/S, (i+1) * N/S). Exactly one
# sequence is held per stride; packing several short sequences into one
# stride is not supported. Positions of a stride that the sequence mask
# flags as padding (looked up as time t of sequence i) must be a trailing
# run; the dynamic program covers the valid prefix only.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from torch import Tensor

from training_criteria.core.errors import LabelError, ShapeError
from training_criteria.core.types import CriterionType
from training_criteria.kernels import crf
from training_criteria.nodes.base import ComputationNode, CriterionNode
from training_criteria.tensor.layout import MinibatchLayout

logger = logging.getLogger(__name__)

# (first column, number of valid positions) of one sequence
Segment = Tuple[int, int]


class SequenceCRFNode(CriterionNode):
    """
    Linear-chain CRF criterion.

    After evaluate_forward(), `post_prob` holds the label marginals of every
    valid position and `start_labels` / `end_labels` the gold labels at the
    ends of each sequence.
    """

    OPERATION_NAME = CriterionType.SEQUENCE_CRF.value
    SCRATCH_TENSORS = ("alpha", "beta", "post_prob")
    NUM_INPUTS = 3
    GRADIENT_INPUTS = (1, 2)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.start_labels: List[int] = []
        self.end_labels: List[int] = []
        self._segments: List[Segment] = []

    def attach_inputs(
        self,
        label: ComputationNode,
        position_score: ComputationNode,
        transition_score: ComputationNode,
    ) -> None:
        self.inputs = [label, position_score, transition_score]

    def _copy_extra_state(self, target: "SequenceCRFNode") -> None:
        target.start_labels = list(self.start_labels)
        target.end_labels = list(self.end_labels)
        target._segments = list(self._segments)

    # ─────────────────────────────────────────────────────────────────────────
    # Contract
    # ─────────────────────────────────────────────────────────────────────────

    def _validate_inputs(self) -> None:
        self._require_non_empty(0, 1, 2)
        labels, pos, pair = (node.value for node in self.inputs)
        if tuple(labels.shape) != tuple(pos.shape):
            raise self._shape_error(
                "Label and position scores must have the same shape",
                f"{labels.shape[0]}x{labels.shape[1]}",
                f"{pos.shape[0]}x{pos.shape[1]}",
            )
        if pair.shape[0] != pair.shape[1] or pair.shape[0] != labels.shape[0]:
            raise self._shape_error(
                "Pair scores must be square with one row per label",
                f"{labels.shape[0]}x{labels.shape[0]}",
                f"{pair.shape[0]}x{pair.shape[1]}",
            )
        rows, cols = labels.shape
        for attr in self.SCRATCH_TENSORS:
            setattr(self, attr, self._empty(rows, cols))

    def _evaluate(self) -> float:
        labels = self.inputs[0].value
        rows, cols = labels.shape
        if tuple(self.alpha.shape) != (rows, cols):
            for attr in self.SCRATCH_TENSORS:
                setattr(self, attr, self._empty(rows, cols))
        else:
            self.post_prob.zero_()

        self._segments = self.sequence_segments(self.layout, cols)
        logger.debug(f"CRF '{self.name}' segments (start, length): {self._segments}")
        loss, self.start_labels, self.end_labels = self.compute_loss(
            self.post_prob,
            self.alpha,
            self.beta,
            labels,
            self.inputs[1].value,
            self.inputs[2].value,
            self._segments,
        )
        return loss

    def _compute_gradient(self, input_index: int) -> None:
        labels = self.inputs[0].value
        target = self.inputs[input_index].gradient
        scale = self.upstream
        for start, length in self._segments:
            cols = slice(start, start + length)
            if input_index == 1:
                crf.position_grad_compute(labels[:, cols], self.post_prob[:, cols], target[:, cols], scale)
            else:
                crf.trans_grad_compute(
                    labels[:, cols],
                    self.alpha[:, cols],
                    self.beta[:, cols],
                    self.inputs[2].value,
                    target,
                    scale,
                )

    # ─────────────────────────────────────────────────────────────────────────
    # Static Computation
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def sequence_segments(layout: Optional[MinibatchLayout], num_columns: int) -> List[Segment]:
        """
        Column range of the valid prefix of every sequence stride.

        Raises:
            ShapeError: If the layout width differs from num_columns
            LabelError: If a padding position is followed by a valid one
        """
        if layout is not None and layout.num_columns != num_columns:
            raise ShapeError(
                message="Minibatch layout does not cover the CRF columns",
                operation=CriterionType.SEQUENCE_CRF.value,
                expected=str(layout.num_columns),
                got=str(num_columns),
            )
        num_sequences = 1 if layout is None else layout.num_parallel_sequences
        stride = num_columns // num_sequences

        segments = []
        for i in range(num_sequences):
            length = stride
            if layout is not None and not layout.is_all_none():
                flags = [layout.is_missing(i, t) for t in range(stride)]
                length = flags.index(True) if True in flags else stride
                if any(not missing for missing in flags[length:]):
                    raise LabelError(
                        message=f"Padding inside CRF sequence {i} must be a trailing run",
                        operation=CriterionType.SEQUENCE_CRF.value,
                        column=i * stride + length,
                    )
            if length > 0:
                segments.append((i * stride, length))
        return segments

    @staticmethod
    def compute_loss(
        post_prob: Tensor,
        alpha: Tensor,
        beta: Tensor,
        labels: Tensor,
        pos_scores: Tensor,
        pair_scores: Tensor,
        segments: List[Segment],
    ) -> Tuple[float, List[int], List[int]]:
        total = 0.0
        start_labels, end_labels = [], []
        for start, length in segments:
            cols = slice(start, start + length)
            if crf.active_label(labels[:, cols], 0) < 0:
                raise LabelError(
                    message="CRF sequence has no active label at its first position",
                    operation=CriterionType.SEQUENCE_CRF.value,
                    column=start,
                )
            nll, first, last = crf.evaluate_sequence(
                post_prob[:, cols],
                alpha[:, cols],
                beta[:, cols],
                labels[:, cols],
                pos_scores[:, cols],
                pair_scores,
            )
            total += nll
            start_labels.append(first)
            end_labels.append(last)
        return total, start_labels, end_labels


__all__ = ["SequenceCRFNode"]
