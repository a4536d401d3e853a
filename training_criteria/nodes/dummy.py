# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Dummy Criterion
# ════════════════════════════════════════════════════════════════════════════════
# Injects an externally computed objective and derivative into the graph,
# e.g. from a lattice decoder that runs outside the network.
#
# Inputs:
#   0: objective   1 x 1 feature
#   1: derivative  feature shaped like input 2
#   2: prediction  the node whose gradient receives the derivative
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import logging

from training_criteria.core.types import CriterionType
from training_criteria.nodes.base import ComputationNode, CriterionNode
from training_criteria.tensor.ops import add_with_scale_of

logger = logging.getLogger(__name__)


class DummyCriterionNode(CriterionNode):
    OPERATION_NAME = CriterionType.DUMMY_CRITERION.value
    NUM_INPUTS = 3
    GRADIENT_INPUTS = (2,)

    def attach_inputs(
        self,
        objective: ComputationNode,
        derivative: ComputationNode,
        prediction: ComputationNode,
    ) -> None:
        self.inputs = [objective, derivative, prediction]

    def _validate_inputs(self) -> None:
        self._require_input_value(0)
        self._require_input_value(1)
        objective, derivative, prediction = (node.value for node in self.inputs)
        if objective.shape[0] != 1:
            raise self._shape_error("Objective feature must have a single row", 1, objective.shape[0])
        self._require_non_empty(0, 1, 2)
        if derivative.shape[0] != prediction.shape[0]:
            raise self._shape_error(
                "Derivative and prediction row counts differ",
                prediction.shape[0],
                derivative.shape[0],
            )
        if derivative.shape[1] != prediction.shape[1]:
            derivative_node = self.inputs[1]
            logger.debug(f"DummyCriterion '{self.name}': resizing derivative '{derivative_node.name}' "
                         f"to {prediction.shape[1]} columns")
            derivative_node.resize(derivative.shape[0], prediction.shape[1])

    def _evaluate(self) -> float:
        objective = self.inputs[0].value
        if objective.numel() != 1:
            raise self._shape_error(
                "Objective feature must be 1x1",
                "1x1",
                f"{objective.shape[0]}x{objective.shape[1]}",
            )
        return objective.reshape(-1)[0].item()

    def _compute_gradient(self, input_index: int) -> None:
        add_with_scale_of(self.upstream, self.inputs[1].value, self.inputs[2].gradient)


__all__ = ["DummyCriterionNode"]
