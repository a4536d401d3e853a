# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Cross Entropy
# ════════════════════════════════════════════════════════════════════════════════
# CrossEntropyWithSoftmax: -<label, logSoftmax(logits)>, column-wise soft-max
# CrossEntropy:            -<label, log(prob)>, input 1 already a distribution
#
# Both mask padding columns of the log term before the inner product.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

from typing import Optional

import torch
from torch import Tensor

from training_criteria.core.types import CriterionType
from training_criteria.nodes.base import ComputationNode, CriterionNode
from training_criteria.tensor.layout import (
    MinibatchLayout,
    mask_to_zero_when_label_and_feature_missing,
)
from training_criteria.tensor.ops import (
    add_scaled_difference,
    add_with_scale_of,
    inner_product,
)


# ═════════════════════════════════════════════════════════════════════════════════
# Cross Entropy With Softmax
# ═════════════════════════════════════════════════════════════════════════════════

class CrossEntropyWithSoftmaxNode(CriterionNode):
    """
    Cross entropy between a label distribution and soft-max(logits).

    Inputs:
        0: label, one-hot or probability columns (C x T)
        1: pre-soft-max logits (C x T)
    """

    OPERATION_NAME = CriterionType.CROSS_ENTROPY_WITH_SOFTMAX.value
    SCRATCH_TENSORS = ("log_softmax_of_right", "softmax_of_right")
    NUM_INPUTS = 2
    GRADIENT_INPUTS = (0, 1)

    def attach_inputs(self, label: ComputationNode, prediction: ComputationNode) -> None:
        self.inputs = [label, prediction]

    def _validate_inputs(self) -> None:
        self._infer_learnable_shape(0, 1)
        self._infer_learnable_shape(1, 0)
        self._require_non_empty(0, 1)
        self._require_same_shape(0, 1)
        shape = self.inputs[0].value.shape
        self.log_softmax_of_right = self._empty(*shape)
        self.softmax_of_right = self._empty(*shape)

    def _evaluate(self) -> float:
        return self.compute_loss(
            self.log_softmax_of_right,
            self.softmax_of_right,
            self.inputs[0].value,
            self.inputs[1].value,
            self.layout,
        )

    def _compute_gradient(self, input_index: int) -> None:
        target = self.inputs[input_index].gradient
        if input_index == 0:
            self.label_partial(target, self.log_softmax_of_right, self.upstream)
        else:
            self.logits_partial(
                target,
                self.softmax_of_right,
                self.inputs[0].value,
                self.upstream,
                self.layout,
            )

    @staticmethod
    def compute_loss(
        log_softmax_of_right: Tensor,
        softmax_of_right: Tensor,
        label: Tensor,
        logits: Tensor,
        layout: Optional[MinibatchLayout],
    ) -> float:
        log_softmax_of_right.copy_(torch.log_softmax(logits, dim=0))
        # soft-max is taken before masking, the gradient re-masks
        torch.exp(log_softmax_of_right, out=softmax_of_right)
        mask_to_zero_when_label_and_feature_missing(layout, log_softmax_of_right)
        return -inner_product(label, log_softmax_of_right).item()

    @staticmethod
    def label_partial(label_gradient: Tensor, log_softmax_of_right: Tensor, scale: float) -> None:
        add_with_scale_of(-scale, log_softmax_of_right, label_gradient)

    @staticmethod
    def logits_partial(
        logits_gradient: Tensor,
        softmax_of_right: Tensor,
        label: Tensor,
        scale: float,
        layout: Optional[MinibatchLayout],
    ) -> None:
        # masked on its own so padding terms other consumers added survive
        partial = torch.zeros_like(logits_gradient)
        add_scaled_difference(scale, softmax_of_right, label, partial)
        mask_to_zero_when_label_and_feature_missing(layout, partial)
        logits_gradient.add_(partial)


# ═════════════════════════════════════════════════════════════════════════════════
# Cross Entropy
# ═════════════════════════════════════════════════════════════════════════════════

class CrossEntropyNode(CriterionNode):
    """
    Cross entropy against an already normalized distribution.

    Input 0 must be an InputValue leaf.
    """

    OPERATION_NAME = CriterionType.CROSS_ENTROPY.value
    SCRATCH_TENSORS = ("log_of_right", "left_divided_by_right")
    NUM_INPUTS = 2
    GRADIENT_INPUTS = (0, 1)

    def attach_inputs(self, label: ComputationNode, prediction: ComputationNode) -> None:
        self.inputs = [label, prediction]

    def _validate_inputs(self) -> None:
        self._require_input_value(0)
        self._infer_learnable_shape(1, 0)
        self._require_non_empty(0, 1)
        self._require_same_shape(0, 1)
        shape = self.inputs[0].value.shape
        self.log_of_right = self._empty(*shape)
        self.left_divided_by_right = self._empty(*shape)

    def _evaluate(self) -> float:
        return self.compute_loss(
            self.log_of_right,
            self.inputs[0].value,
            self.inputs[1].value,
            self.layout,
        )

    def _compute_gradient(self, input_index: int) -> None:
        target = self.inputs[input_index].gradient
        if input_index == 0:
            add_with_scale_of(-self.upstream, self.log_of_right, target)
        else:
            self.prediction_partial(
                target,
                self.left_divided_by_right,
                self.inputs[0].value,
                self.inputs[1].value,
                self.upstream,
                self.layout,
            )

    @staticmethod
    def compute_loss(
        log_of_right: Tensor,
        label: Tensor,
        prediction: Tensor,
        layout: Optional[MinibatchLayout],
    ) -> float:
        torch.log(prediction, out=log_of_right)
        mask_to_zero_when_label_and_feature_missing(layout, log_of_right)
        return -inner_product(label, log_of_right).item()

    @staticmethod
    def prediction_partial(
        prediction_gradient: Tensor,
        left_divided_by_right: Tensor,
        label: Tensor,
        prediction: Tensor,
        scale: float,
        layout: Optional[MinibatchLayout],
    ) -> None:
        torch.div(label, prediction, out=left_divided_by_right)
        mask_to_zero_when_label_and_feature_missing(layout, left_divided_by_right)
        add_with_scale_of(-scale, left_divided_by_right, prediction_gradient)


__all__ = [
    "CrossEntropyWithSoftmaxNode",
    "CrossEntropyNode",
]
