# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Shared Test Fixtures
# ════════════════════════════════════════════════════════════════════════════════
# Node builders and finite-difference gradient checks used across the suite.
# All checks run on CPU in double precision.
# ════════════════════════════════════════════════════════════════════════════════

from typing import Callable, Optional

import pytest
import torch

from training_criteria.nodes.base import CriterionNode, InputValueNode, LearnableParameterNode

DTYPE = torch.float64


def make_input(name: str, value: torch.Tensor) -> InputValueNode:
    node = InputValueNode(name, dtype=DTYPE)
    node.set_value(value)
    return node


def make_parameter(name: str, value: torch.Tensor) -> LearnableParameterNode:
    node = LearnableParameterNode(name, dtype=DTYPE)
    node.set_value(value)
    return node


def numeric_gradient(node: CriterionNode, index: int, step: float = 1e-6) -> torch.Tensor:
    """Central-difference d(loss)/d(input index), element by element."""
    value = node.inputs[index].value
    grad = torch.zeros_like(value)
    rows, cols = value.shape
    for r in range(rows):
        for c in range(cols):
            orig = value[r, c].item()
            value[r, c] = orig + step
            plus = node.evaluate_forward()
            value[r, c] = orig - step
            minus = node.evaluate_forward()
            value[r, c] = orig
            grad[r, c] = (plus - minus) / (2 * step)
    node.evaluate_forward()
    return grad


def analytic_gradient(node: CriterionNode, index: int, upstream: float = 1.0) -> torch.Tensor:
    """Run forward, seed the output gradient and backpropagate into a zeroed input gradient."""
    node.evaluate_forward()
    node.gradient.fill_(upstream)
    node.inputs[index].zero_gradient()
    node.compute_gradient(index)
    return node.inputs[index].gradient.clone()


@pytest.fixture
def rng() -> torch.Generator:
    return torch.Generator().manual_seed(1234)


@pytest.fixture
def gradcheck() -> Callable[..., None]:
    """
    Assert analytic == upstream * numeric gradient for the given inputs.

    Usage: gradcheck(node, indices=(0, 1), upstream=0.7)
    """
    def check(
        node: CriterionNode,
        indices=None,
        upstream: float = 1.0,
        atol: float = 1e-5,
        rtol: float = 1e-4,
        skip_columns: Optional[list] = None,
    ) -> None:
        for index in indices if indices is not None else node.GRADIENT_INPUTS:
            analytic = analytic_gradient(node, index, upstream)
            numeric = numeric_gradient(node, index) * upstream
            if skip_columns:
                keep = [c for c in range(analytic.shape[1]) if c not in skip_columns]
                analytic, numeric = analytic[:, keep], numeric[:, keep]
            assert torch.allclose(analytic, numeric, atol=atol, rtol=rtol), (
                f"input {index}: analytic\n{analytic}\nnumeric\n{numeric}"
            )

    return check
