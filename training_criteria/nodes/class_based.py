# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Class-Based Cross Entropy With Softmax
# ════════════════════════════════════════════════════════════════════════════════
# Two-level soft-max: log P(word | h) = log P(class | h) + log P(word | class, h)
#
# Inputs:
#   0: label       4 x T   rows: word, class, class start, class end (exclusive)
#   1: hidden      H x T
#   2: weight      H x V   class c owns the columns [start, end)
#   3: class logit C x T
#
# The word soft-max of column t only spans its class's columns, so the word
# scratch tensors are a single row with one slice per column, packed in
# column order. A column whose class range is empty and whose word is 0
# carries no label and is skipped.
#
# The label tensor is read element by element and must stay on the CPU.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging
from typing import Iterator, List, Optional, Tuple

import torch
from torch import Tensor

from training_criteria.core.errors import CriterionError, DevicePlacementError, LabelError
from training_criteria.core.types import CacheState, CriterionType
from training_criteria.nodes.base import ComputationNode, CriterionNode
from training_criteria.tensor.layout import MinibatchPackingFlags
from training_criteria.tensor.ops import add_with_scale_of, minus_one_at

logger = logging.getLogger(__name__)

_OPERATION = CriterionType.CLASS_BASED_CROSS_ENTROPY_WITH_SOFTMAX.value

# (column, word, class, class start, words in class, offset into word scratch)
LabelColumn = Tuple[int, int, int, int, int, int]


def _label_columns(labels: Tensor) -> List[LabelColumn]:
    """Decode the label columns and the word-scratch offset of each."""
    columns = []
    offset = 0
    for t, (word, cls, left, right) in enumerate(labels.t().long().tolist()):
        num_words = right - left
        if num_words < 0:
            raise LabelError(
                message=f"Class range [{left}, {right}) is inverted",
                operation=_OPERATION,
                column=t,
            )
        columns.append((t, word, cls, left, num_words, offset))
        offset += num_words
    return columns


def _labelled(columns: List[LabelColumn], missing: Optional[List[bool]]) -> Iterator[LabelColumn]:
    """Columns that carry a label and are not padding."""
    for column in columns:
        t, word, _, _, num_words, _ = column
        if num_words == 0:
            if word != 0:
                raise LabelError(
                    message="Label names a word but its class has no words",
                    operation=_OPERATION,
                    column=t,
                    remediation="Check the class boundaries produced by the reader",
                )
            continue
        if missing is not None and missing[t]:
            continue
        yield column


class ClassBasedCrossEntropyWithSoftmaxNode(CriterionNode):
    """
    Hierarchical soft-max cross entropy over word classes.

    The gradient of the loss with respect to the word soft-max inputs is
    derived lazily on the first compute_gradient() after each forward pass
    and shared by the three gradient targets.
    """

    OPERATION_NAME = _OPERATION
    SCRATCH_TENSORS = (
        "log_softmax",
        "softmax",
        "cls_log_softmax",
        "cls_softmax",
        "grd_to_softmax_input",
    )
    NUM_INPUTS = 4
    GRADIENT_INPUTS = (1, 2, 3)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.total_words = 0
        self._softmax_partial = CacheState.STALE

    def attach_inputs(
        self,
        label: ComputationNode,
        hidden: ComputationNode,
        weight: ComputationNode,
        class_logits: ComputationNode,
    ) -> None:
        self.inputs = [label, hidden, weight, class_logits]

    def _copy_extra_state(self, target: "ClassBasedCrossEntropyWithSoftmaxNode") -> None:
        target.total_words = self.total_words
        target._softmax_partial = self._softmax_partial

    # ─────────────────────────────────────────────────────────────────────────
    # Contract
    # ─────────────────────────────────────────────────────────────────────────

    def _validate_inputs(self) -> None:
        self._require_input_value(0)
        self._require_non_empty(0, 1, 2, 3)
        labels, hidden, weight, class_logits = (node.value for node in self.inputs)
        if hidden.shape[0] != weight.shape[0]:
            raise self._shape_error("Hidden and weight row counts differ", hidden.shape[0], weight.shape[0])
        if labels.shape[1] != hidden.shape[1]:
            raise self._shape_error("Label and hidden column counts differ", hidden.shape[1], labels.shape[1])
        if labels.shape[0] != 4:
            raise self._shape_error("Label needs word, class, class start and class end rows", 4, labels.shape[0])
        if class_logits.shape[1] != labels.shape[1]:
            raise self._shape_error(
                "Class logit and label column counts differ",
                labels.shape[1],
                class_logits.shape[1],
            )

    def _evaluate(self) -> float:
        labels, hidden, weight, class_logits = (node.value for node in self.inputs)
        if labels.device.type != "cpu":
            raise DevicePlacementError(
                message="Label is read per column and must reside on the CPU",
                operation=self.OPERATION_NAME,
                device=str(labels.device),
                remediation="Keep the label node on the CPU; other inputs may live on the GPU",
            )
        # scratch is overwritten from here on, even if the pass fails
        self._softmax_partial = CacheState.STALE
        loss, self.total_words = self.compute_loss(
            labels,
            hidden,
            weight,
            class_logits,
            self.log_softmax,
            self.softmax,
            self.cls_log_softmax,
            self.cls_softmax,
            self._label_missing(),
        )
        return loss

    def _compute_gradient(self, input_index: int) -> None:
        labels, hidden, weight, _ = (node.value for node in self.inputs)
        self._ensure_softmax_partial()
        columns = _label_columns(labels)
        missing = self._label_missing()
        target = self.inputs[input_index].gradient

        if input_index == 1:
            self.hidden_partial(columns, missing, weight, self.grd_to_softmax_input, target)
        elif input_index == 2:
            self.weight_partial(columns, missing, hidden, self.grd_to_softmax_input, target)
        else:
            self.class_partial(columns, missing, self.cls_softmax, target, self.upstream)

    def _label_missing(self) -> Optional[List[bool]]:
        if self.layout is None or self.layout.is_all_none():
            return None
        return self.layout.missing_columns(MinibatchPackingFlags.NO_LABEL).tolist()

    def _ensure_softmax_partial(self) -> None:
        if self._softmax_partial is CacheState.VALID:
            return
        if self._softmax_partial is CacheState.IN_PROGRESS:
            raise CriterionError(
                message="Soft-max gradient requested while it is being recomputed",
                context={"node": self.name},
            )

        logger.debug(f"{self.OPERATION_NAME} '{self.name}': recomputing soft-max input gradient")
        self._softmax_partial = CacheState.IN_PROGRESS
        try:
            self.softmax_partial(
                _label_columns(self.inputs[0].value),
                self._label_missing(),
                self.softmax,
                self.grd_to_softmax_input,
                self.upstream,
                self.total_words,
            )
        except Exception:
            self._softmax_partial = CacheState.STALE
            raise
        self._softmax_partial = CacheState.VALID

    # ─────────────────────────────────────────────────────────────────────────
    # Static Computation
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def compute_loss(
        labels: Tensor,
        hidden: Tensor,
        weight: Tensor,
        class_logits: Tensor,
        log_softmax: Tensor,
        softmax: Tensor,
        cls_log_softmax: Tensor,
        cls_softmax: Tensor,
        missing: Optional[List[bool]],
    ) -> Tuple[float, int]:
        """
        Returns:
            (loss, total number of words across all class slices)
        """
        columns = _label_columns(labels)
        total_words = sum(column[4] for column in columns)
        num_classes = class_logits.shape[0]

        log_softmax.resize_(1, total_words).zero_()
        softmax.resize_(1, total_words).zero_()
        cls_log_softmax.resize_(class_logits.shape).copy_(torch.log_softmax(class_logits, dim=0))
        cls_softmax.resize_(class_logits.shape).copy_(torch.exp(cls_log_softmax))

        log_likelihood = 0.0
        for t, word, cls, left, num_words, offset in _labelled(columns, missing):
            if word < left or word >= left + num_words:
                raise LabelError(
                    message=f"Word {word} lies outside its class range [{left}, {left + num_words})",
                    operation=_OPERATION,
                    column=t,
                    remediation="This usually points at a reader issue",
                )
            # 1 x H times H x n -> log P(word | class, h) over the class's words
            scores = hidden[:, t] @ weight[:, left:left + num_words]
            word_log_softmax = torch.log_softmax(scores, dim=0)
            log_softmax[0, offset:offset + num_words] = word_log_softmax
            softmax[0, offset:offset + num_words] = torch.exp(word_log_softmax)
            log_likelihood += word_log_softmax[word - left].item()

            if not 0 <= cls < num_classes:
                logger.error(f"{_OPERATION}: class index {cls} at column {t} exceeds the {num_classes} "
                             f"class logits; the number of classes must be the maximum class index + 1")
                raise LabelError(
                    message=f"Class index {cls} out of range for {num_classes} classes",
                    operation=_OPERATION,
                    column=t,
                )
            log_likelihood += cls_log_softmax[cls, t].item()

        return -log_likelihood, total_words

    @staticmethod
    def softmax_partial(
        columns: List[LabelColumn],
        missing: Optional[List[bool]],
        softmax: Tensor,
        grd_to_softmax_input: Tensor,
        scale: float,
        total_words: int,
    ) -> None:
        """grd[slice t] = scale * (softmax[slice t] - onehot(word - start))"""
        grd_to_softmax_input.resize_(1, total_words).zero_()
        for _, word, _, left, num_words, offset in _labelled(columns, missing):
            grd = softmax[0, offset:offset + num_words].clone()
            minus_one_at(grd, word - left)
            grd_to_softmax_input[0, offset:offset + num_words] = grd * scale

    @staticmethod
    def hidden_partial(
        columns: List[LabelColumn],
        missing: Optional[List[bool]],
        weight: Tensor,
        grd_to_softmax_input: Tensor,
        hidden_gradient: Tensor,
    ) -> None:
        for t, _, _, left, num_words, offset in _labelled(columns, missing):
            grd = grd_to_softmax_input[0, offset:offset + num_words]
            hidden_gradient[:, t] += weight[:, left:left + num_words] @ grd

    @staticmethod
    def weight_partial(
        columns: List[LabelColumn],
        missing: Optional[List[bool]],
        hidden: Tensor,
        grd_to_softmax_input: Tensor,
        weight_gradient: Tensor,
    ) -> None:
        for t, _, _, left, num_words, offset in _labelled(columns, missing):
            grd = grd_to_softmax_input[0, offset:offset + num_words]
            weight_gradient[:, left:left + num_words] += torch.outer(hidden[:, t], grd)

    @staticmethod
    def class_partial(
        columns: List[LabelColumn],
        missing: Optional[List[bool]],
        cls_softmax: Tensor,
        class_gradient: Tensor,
        scale: float,
    ) -> None:
        for t, _, cls, _, _, _ in _labelled(columns, missing):
            add_with_scale_of(scale, cls_softmax[:, t], class_gradient[:, t])
            class_gradient[cls, t] -= scale


__all__ = ["ClassBasedCrossEntropyWithSoftmaxNode"]
