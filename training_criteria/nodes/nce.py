# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Noise-Contrastive Estimation
# ════════════════════════════════════════════════════════════════════════════════
# Sampled approximation of a full-vocabulary soft-max cross entropy.
#
# Inputs:
#   0: label    2K x T samples and log-probabilities (NCE training), or
#               1 x T word indices (evaluation)
#   1: hidden   H x T
#   2: weight   H x V
#   3: bias     1 x V
#
# The evaluation mode decides the objective:
#   SOFTMAX       exact cross entropy over V
#   UNNORMALIZED  raw score of the labelled word, no partition function
#   NONE          NCE training objective (the only mode with gradients)
#
# A single-row label can override the configured mode by its sign: positive
# entries select SOFTMAX, negative entries (negated word indices) select
# UNNORMALIZED.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging
from typing import BinaryIO, Union

import torch
from torch import Tensor

from training_criteria.core.errors import EvalModeError, LabelError
from training_criteria.core.stream import ENUM_WIDTH, read_int32, rewind, write_int32
from training_criteria.core.types import CriterionType, NCEEvalMode
from training_criteria.kernels import nce
from training_criteria.nodes.base import ComputationNode, CriterionNode, Device

logger = logging.getLogger(__name__)


class NoiseContrastiveEstimationNode(CriterionNode):
    """
    NCE criterion with soft-max and unnormalized evaluation modes.

    Example:
        >>> node = NoiseContrastiveEstimationNode("nce")
        >>> node.attach_inputs(samples, hidden, embedding, bias)
        >>> node.validate()
        >>> node.evaluate_forward()
        >>> node.eval_mode = NCEEvalMode.SOFTMAX   # switch for evaluation
    """

    OPERATION_NAME = CriterionType.NOISE_CONTRASTIVE_ESTIMATION.value
    SCRATCH_TENSORS = ("log_softmax", "nce_prediction")
    NUM_INPUTS = 4
    GRADIENT_INPUTS = (1, 2, 3)

    def __init__(
        self,
        name: str,
        device: Device = "cpu",
        dtype: torch.dtype = torch.float32,
        nan_check: bool = False,
        dump_output: bool = False,
        eval_mode: Union[NCEEvalMode, int] = NCEEvalMode.NONE,
    ):
        super().__init__(name, device=device, dtype=dtype, nan_check=nan_check, dump_output=dump_output)
        self._eval_mode = NCEEvalMode(eval_mode)
        self._forward_mode = self._eval_mode

    @property
    def eval_mode(self) -> NCEEvalMode:
        return self._eval_mode

    @eval_mode.setter
    def eval_mode(self, mode: Union[NCEEvalMode, int]) -> None:
        self._eval_mode = NCEEvalMode(mode)

    def attach_inputs(
        self,
        label: ComputationNode,
        hidden: ComputationNode,
        weight: ComputationNode,
        bias: ComputationNode,
    ) -> None:
        self.inputs = [label, hidden, weight, bias]

    def _copy_extra_state(self, target: "NoiseContrastiveEstimationNode") -> None:
        target._eval_mode = self._eval_mode
        target._forward_mode = self._forward_mode

    # ─────────────────────────────────────────────────────────────────────────
    # Serialization
    # ─────────────────────────────────────────────────────────────────────────

    def save_to_stream(self, stream: BinaryIO) -> None:
        super().save_to_stream(stream)
        write_int32(stream, self._eval_mode.value)

    def load_from_stream(self, stream: BinaryIO) -> None:
        """
        Read the header and the evaluation mode.

        Streams written without a mode hold the next record where the mode
        would be; an out-of-range value is taken as such a record, so the
        mode falls back to NONE and the cursor is moved back over it.
        """
        super().load_from_stream(stream)
        raw = read_int32(stream)
        if raw in {mode.value for mode in NCEEvalMode}:
            self._eval_mode = NCEEvalMode(raw)
        else:
            logger.debug(f"NCE node '{self.name}': stream value {raw} is not a mode, using NONE")
            self._eval_mode = NCEEvalMode.NONE
            rewind(stream, ENUM_WIDTH)

    # ─────────────────────────────────────────────────────────────────────────
    # Contract
    # ─────────────────────────────────────────────────────────────────────────

    def _validate_inputs(self) -> None:
        self._require_input_value(0)
        self._require_non_empty(0, 1, 2, 3)
        labels, hidden, weight, bias = (node.value for node in self.inputs)
        if hidden.shape[0] != weight.shape[0]:
            raise self._shape_error(
                "Hidden and weight row counts differ",
                hidden.shape[0],
                weight.shape[0],
            )
        if labels.shape[1] != hidden.shape[1]:
            raise self._shape_error(
                "Label and hidden column counts differ",
                hidden.shape[1],
                labels.shape[1],
            )
        if tuple(bias.shape) != (1, weight.shape[1]):
            raise self._shape_error(
                "Bias must be one row with a column per vocabulary entry",
                f"1x{weight.shape[1]}",
                f"{bias.shape[0]}x{bias.shape[1]}",
            )

    def _evaluate(self) -> float:
        labels, hidden, weight, bias = (node.value for node in self.inputs)
        missing = self._missing_columns()
        mode = self.select_mode(labels, self._eval_mode)
        if mode is not self._eval_mode:
            logger.warning(f"NCE node '{self.name}': label sign selects {mode.name} evaluation "
                           f"instead of {self._eval_mode.name}")
        self._forward_mode = mode

        if mode is NCEEvalMode.SOFTMAX:
            return nce.softmax_sum(labels, hidden, weight, bias, self.log_softmax, missing)
        if mode is NCEEvalMode.UNNORMALIZED:
            return nce.nce_unnormalized_eval(labels, hidden, weight, bias, missing)
        if labels.shape[0] < 2 or labels.shape[0] % 2:
            raise self._shape_error(
                "NCE training labels hold a (word, log-probability) row pair per sample",
                "an even number of rows",
                labels.shape[0],
            )
        return nce.noise_contrastive_estimation(labels, hidden, weight, bias, self.nce_prediction, missing)

    @property
    def forward_mode(self) -> NCEEvalMode:
        """Mode the last forward pass ran in."""
        return self._forward_mode

    def compute_gradient(self, input_index: int) -> None:
        # configured mode first, then the mode the last forward pass ran in
        mode = self._eval_mode if self._eval_mode is not NCEEvalMode.NONE else self._forward_mode
        if mode is not NCEEvalMode.NONE:
            raise EvalModeError(
                message="Gradients are only defined for the NCE training objective",
                operation=self.OPERATION_NAME,
                eval_mode=mode.name,
            )
        super().compute_gradient(input_index)

    def _compute_gradient(self, input_index: int) -> None:
        labels, hidden, weight, _ = (node.value for node in self.inputs)
        nce.nce_derivative(
            input_index,
            self.nce_prediction,
            labels,
            hidden,
            weight,
            self.inputs[input_index].gradient,
            self.upstream,
        )

    @staticmethod
    def select_mode(labels: Tensor, eval_mode: NCEEvalMode) -> NCEEvalMode:
        """
        Mode actually used for a forward pass.

        SOFTMAX is taken when configured or when a single-row label has
        positive entries, UNNORMALIZED when configured or when such a label
        has negative entries. Anything else runs the NCE objective.
        """
        positive = negative = 0
        if labels.shape[0] == 1:
            positive = int((labels > 0).sum().item())
            negative = int((labels < 0).sum().item())
            if positive and negative:
                raise LabelError(
                    message="Evaluation label mixes word indices and negated word indices",
                    operation=CriterionType.NOISE_CONTRASTIVE_ESTIMATION.value,
                    context={"positive": positive, "negative": negative},
                )

        if eval_mode is NCEEvalMode.SOFTMAX or positive > 0:
            return NCEEvalMode.SOFTMAX
        if eval_mode is NCEEvalMode.UNNORMALIZED or negative > 0:
            return NCEEvalMode.UNNORMALIZED
        return NCEEvalMode.NONE


__all__ = ["NoiseContrastiveEstimationNode"]
