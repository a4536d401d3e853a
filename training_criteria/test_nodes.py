"""
Training Criteria - Elementwise Criterion Tests

Forward values and gradients of SquareError, CrossEntropy,
CrossEntropyWithSoftmax, MatrixL1Reg, MatrixL2Reg and DummyCriterion,
plus the node contract shared by all criteria.

Run: pytest training_criteria/test_nodes.py
"""

import io
import math

import pytest
import torch

from training_criteria.conftest import DTYPE, make_input, make_parameter
from training_criteria.core.errors import (
    InvalidGradientTargetError,
    NumericAnomalyError,
    SerializationError,
    ShapeError,
    StructuralPreconditionError,
)
from training_criteria.core.types import CopyNodeFlags, EPS_IN_INVERSE, ImageLayout
from training_criteria.nodes import (
    CrossEntropyNode,
    CrossEntropyWithSoftmaxNode,
    DummyCriterionNode,
    MatrixL1RegNode,
    MatrixL2RegNode,
    NoiseContrastiveEstimationNode,
    SquareErrorNode,
)


def _criterion(node_cls, *inputs, **kwargs):
    node = node_cls("criterion", dtype=DTYPE, **kwargs)
    node.attach_inputs(*inputs)
    node.validate()
    return node


def _one_hot(rows: int, hot: list) -> torch.Tensor:
    labels = torch.zeros(rows, len(hot), dtype=DTYPE)
    for t, k in enumerate(hot):
        labels[k, t] = 1.0
    return labels


# ═════════════════════════════════════════════════════════════════════════════════
# Square Error
# ═════════════════════════════════════════════════════════════════════════════════

def test_square_error_value(rng):
    x0 = torch.randn(3, 4, generator=rng, dtype=DTYPE)
    x1 = torch.randn(3, 4, generator=rng, dtype=DTYPE)
    node = _criterion(SquareErrorNode, make_input("a", x0), make_parameter("b", x1))

    loss = node.evaluate_forward()

    assert loss == pytest.approx(0.5 * torch.sum((x0 - x1) ** 2).item())
    assert node.value.shape == (1, 1)
    assert node.value.item() == pytest.approx(loss)


def test_square_error_identical_inputs_give_zero():
    x = torch.arange(6, dtype=DTYPE).reshape(2, 3)
    node = _criterion(SquareErrorNode, make_input("a", x), make_parameter("b", x))

    assert node.evaluate_forward() == 0.0
    node.gradient.fill_(1.0)
    for index in (0, 1):
        node.inputs[index].zero_gradient()
        node.compute_gradient(index)
        assert torch.count_nonzero(node.inputs[index].gradient) == 0


def test_square_error_gradients(rng, gradcheck):
    node = _criterion(
        SquareErrorNode,
        make_parameter("a", torch.randn(2, 3, generator=rng, dtype=DTYPE)),
        make_parameter("b", torch.randn(2, 3, generator=rng, dtype=DTYPE)),
    )
    gradcheck(node, upstream=0.7)


def test_square_error_gradient_accumulates(rng):
    x0 = torch.randn(2, 2, generator=rng, dtype=DTYPE)
    x1 = torch.randn(2, 2, generator=rng, dtype=DTYPE)
    node = _criterion(SquareErrorNode, make_parameter("a", x0), make_parameter("b", x1))
    node.evaluate_forward()
    node.gradient.fill_(1.0)

    node.inputs[1].gradient = torch.ones(2, 2, dtype=DTYPE)
    node.compute_gradient(1)

    assert torch.allclose(node.inputs[1].gradient, 1.0 - (x0 - x1))


def test_square_error_sizes_empty_parameter():
    x = torch.ones(4, 2, dtype=DTYPE)
    param = make_parameter("w", torch.zeros(0, 0, dtype=DTYPE))
    node = _criterion(SquareErrorNode, make_input("x", x), param)

    assert param.value.shape == (4, 2)
    assert node.evaluate_forward() == pytest.approx(4.0)


def test_square_error_shape_mismatch():
    node = SquareErrorNode("mse", dtype=DTYPE)
    node.attach_inputs(make_input("a", torch.zeros(2, 3, dtype=DTYPE)),
                       make_input("b", torch.zeros(3, 2, dtype=DTYPE)))

    with pytest.raises(ShapeError):
        node.validate()


# ═════════════════════════════════════════════════════════════════════════════════
# Cross Entropy With Softmax
# ═════════════════════════════════════════════════════════════════════════════════

def test_cross_entropy_with_softmax_value(rng):
    labels = _one_hot(4, [0, 3, 2])
    logits = torch.randn(4, 3, generator=rng, dtype=DTYPE)
    node = _criterion(CrossEntropyWithSoftmaxNode, make_input("y", labels), make_parameter("z", logits))

    expected = -torch.sum(labels * torch.log_softmax(logits, dim=0)).item()

    assert node.evaluate_forward() == pytest.approx(expected)
    assert torch.allclose(node.softmax_of_right.sum(dim=0), torch.ones(3, dtype=DTYPE))


def test_cross_entropy_with_softmax_uniform_logits():
    node = _criterion(
        CrossEntropyWithSoftmaxNode,
        make_input("y", _one_hot(4, [1])),
        make_parameter("z", torch.zeros(4, 1, dtype=DTYPE)),
    )
    assert node.evaluate_forward() == pytest.approx(math.log(4))


def test_cross_entropy_with_softmax_gradients(rng, gradcheck):
    labels = torch.softmax(torch.randn(3, 4, generator=rng, dtype=DTYPE), dim=0)
    node = _criterion(
        CrossEntropyWithSoftmaxNode,
        make_parameter("y", labels),
        make_parameter("z", torch.randn(3, 4, generator=rng, dtype=DTYPE)),
    )
    gradcheck(node, upstream=1.3)


def test_cross_entropy_with_softmax_logit_gradient_columns_sum_to_zero(rng):
    node = _criterion(
        CrossEntropyWithSoftmaxNode,
        make_input("y", _one_hot(5, [4, 0, 2, 2])),
        make_parameter("z", torch.randn(5, 4, generator=rng, dtype=DTYPE)),
    )
    node.evaluate_forward()
    node.gradient.fill_(1.0)
    node.inputs[1].zero_gradient()
    node.compute_gradient(1)

    assert torch.allclose(node.inputs[1].gradient.sum(dim=0), torch.zeros(4, dtype=DTYPE), atol=1e-12)


# ═════════════════════════════════════════════════════════════════════════════════
# Cross Entropy
# ═════════════════════════════════════════════════════════════════════════════════

def test_cross_entropy_value_and_gradient(rng, gradcheck):
    labels = _one_hot(3, [2, 0, 1])
    prob = torch.softmax(torch.randn(3, 3, generator=rng, dtype=DTYPE), dim=0)
    node = _criterion(CrossEntropyNode, make_input("y", labels), make_parameter("p", prob))

    assert node.evaluate_forward() == pytest.approx(-torch.sum(labels * torch.log(prob)).item())
    gradcheck(node, indices=(1,), upstream=0.5)


def test_cross_entropy_label_gradient_is_minus_log_prob(rng):
    prob = torch.softmax(torch.randn(3, 2, generator=rng, dtype=DTYPE), dim=0)
    node = _criterion(CrossEntropyNode, make_input("y", _one_hot(3, [0, 1])), make_parameter("p", prob))
    node.evaluate_forward()
    node.gradient.fill_(2.0)
    node.inputs[0].zero_gradient()
    node.compute_gradient(0)

    assert torch.allclose(node.inputs[0].gradient, -2.0 * torch.log(prob))


def test_cross_entropy_requires_input_value_label():
    node = CrossEntropyNode("ce", dtype=DTYPE)
    node.attach_inputs(make_parameter("y", _one_hot(2, [0])), make_parameter("p", torch.full((2, 1), 0.5)))

    with pytest.raises(StructuralPreconditionError) as exc_info:
        node.validate()
    assert exc_info.value.input_index == 0
    assert exc_info.value.got_operation == "LearnableParameter"


def test_nan_check_reports_non_finite_loss():
    prob = torch.tensor([[1.0], [0.0]], dtype=DTYPE)
    node = _criterion(
        CrossEntropyNode,
        make_input("y", _one_hot(2, [1])),
        make_parameter("p", prob),
        nan_check=True,
    )
    with pytest.raises(NumericAnomalyError):
        node.evaluate_forward()


# ═════════════════════════════════════════════════════════════════════════════════
# Matrix Regularizers
# ═════════════════════════════════════════════════════════════════════════════════

def test_matrix_l1_reg(gradcheck):
    x = torch.tensor([[1.5, -2.0, 0.25], [-0.5, 3.0, -1.0]], dtype=DTYPE)
    node = _criterion(MatrixL1RegNode, make_parameter("w", x))

    assert node.evaluate_forward() == pytest.approx(8.25)
    gradcheck(node, upstream=0.3)

    analytic = node.inputs[0].gradient
    assert torch.allclose(analytic, 0.3 * torch.sign(x))


def test_matrix_l2_reg(gradcheck):
    x = torch.tensor([[3.0, 0.0], [0.0, 4.0]], dtype=DTYPE)
    node = _criterion(MatrixL2RegNode, make_parameter("w", x))

    assert node.evaluate_forward() == pytest.approx(5.0)
    gradcheck(node, upstream=2.0)


def test_matrix_l2_reg_zero_input_has_finite_gradient():
    node = _criterion(MatrixL2RegNode, make_parameter("w", torch.zeros(2, 2, dtype=DTYPE)))

    assert node.evaluate_forward() == 0.0
    node.gradient.fill_(1.0)
    node.inputs[0].zero_gradient()
    node.compute_gradient(0)
    assert torch.isfinite(node.inputs[0].gradient).all()
    assert node.epsilon == EPS_IN_INVERSE


def test_regularizer_leaves_input_untouched():
    from training_criteria.tensor.layout import MinibatchLayout

    x = torch.ones(2, 3, dtype=DTYPE)
    node = _criterion(MatrixL1RegNode, make_parameter("w", x))
    node.set_layout(MinibatchLayout.from_sequence_lengths([2], num_time_steps=3))

    assert node.evaluate_forward() == pytest.approx(4.0)
    assert torch.equal(node.inputs[0].value, x)


# ═════════════════════════════════════════════════════════════════════════════════
# Dummy Criterion
# ═════════════════════════════════════════════════════════════════════════════════

def test_dummy_criterion_passes_objective_and_derivative(rng):
    derivative = torch.randn(3, 2, generator=rng, dtype=DTYPE)
    node = _criterion(
        DummyCriterionNode,
        make_input("objective", torch.tensor([[5.0]], dtype=DTYPE)),
        make_input("derivative", derivative),
        make_parameter("prediction", torch.randn(3, 2, generator=rng, dtype=DTYPE)),
    )

    assert node.evaluate_forward() == 5.0

    node.gradient.fill_(0.25)
    node.inputs[2].zero_gradient()
    node.compute_gradient(2)
    assert torch.equal(node.inputs[2].gradient, 0.25 * derivative)


def test_dummy_criterion_only_backpropagates_to_prediction():
    node = _criterion(
        DummyCriterionNode,
        make_input("objective", torch.tensor([[1.0]], dtype=DTYPE)),
        make_input("derivative", torch.ones(2, 2, dtype=DTYPE)),
        make_parameter("prediction", torch.ones(2, 2, dtype=DTYPE)),
    )
    node.evaluate_forward()
    for index in (0, 1):
        with pytest.raises(InvalidGradientTargetError):
            node.compute_gradient(index)


def test_dummy_criterion_resizes_derivative_columns():
    derivative = make_input("derivative", torch.ones(2, 1, dtype=DTYPE))
    _criterion(
        DummyCriterionNode,
        make_input("objective", torch.tensor([[1.0]], dtype=DTYPE)),
        derivative,
        make_parameter("prediction", torch.ones(2, 4, dtype=DTYPE)),
    )
    assert derivative.value.shape == (2, 4)


def test_dummy_criterion_rejects_multi_row_objective():
    node = DummyCriterionNode("dummy", dtype=DTYPE)
    node.attach_inputs(
        make_input("objective", torch.ones(2, 1, dtype=DTYPE)),
        make_input("derivative", torch.ones(2, 2, dtype=DTYPE)),
        make_parameter("prediction", torch.ones(2, 2, dtype=DTYPE)),
    )
    with pytest.raises(ShapeError):
        node.validate()


def test_dummy_criterion_rejects_wide_objective_at_evaluation():
    objective = make_input("objective", torch.tensor([[1.0]], dtype=DTYPE))
    node = _criterion(
        DummyCriterionNode,
        objective,
        make_input("derivative", torch.ones(2, 2, dtype=DTYPE)),
        make_parameter("prediction", torch.ones(2, 2, dtype=DTYPE)),
    )
    objective.set_value(torch.ones(1, 3, dtype=DTYPE))
    with pytest.raises(ShapeError):
        node.evaluate_forward()


# ═════════════════════════════════════════════════════════════════════════════════
# Node Contract
# ═════════════════════════════════════════════════════════════════════════════════

def test_validate_checks_arity():
    node = SquareErrorNode("mse", dtype=DTYPE)
    node.set_inputs([make_input("a", torch.ones(1, 1, dtype=DTYPE))])

    with pytest.raises(ShapeError):
        node.validate()


def test_validate_rejects_empty_operand():
    node = MatrixL2RegNode("l2", dtype=DTYPE)
    node.attach_inputs(make_parameter("w", torch.zeros(0, 3, dtype=DTYPE)))

    with pytest.raises(ShapeError):
        node.validate()


def test_criterion_image_layout_is_scalar():
    node = _criterion(MatrixL1RegNode, make_parameter("w", torch.ones(5, 2, dtype=DTYPE)))
    assert node.image_layout == ImageLayout(1, 1, 1)


def test_duplicate_copies_values_and_shares_inputs(rng):
    a = make_parameter("a", torch.randn(2, 2, generator=rng, dtype=DTYPE))
    b = make_parameter("b", torch.randn(2, 2, generator=rng, dtype=DTYPE))
    node = _criterion(SquareErrorNode, a, b)
    loss = node.evaluate_forward()

    clone = node.duplicate("clone")
    node.value.fill_(-1.0)

    assert clone.name == "clone"
    assert clone.value.item() == pytest.approx(loss)
    assert clone.inputs[0] is a and clone.inputs[1] is b
    assert clone.evaluate_forward() == pytest.approx(loss)


def test_copy_children_only_leaves_value():
    node = _criterion(MatrixL1RegNode, make_parameter("w", torch.ones(2, 2, dtype=DTYPE)))
    node.evaluate_forward()
    target = MatrixL1RegNode("target", dtype=DTYPE)

    node.copy_to(target, CopyNodeFlags.COPY_NODE_CHILDREN)

    assert target.inputs[0] is node.inputs[0]
    assert target.value.numel() == 0


def test_copy_to_other_type_fails():
    with pytest.raises(TypeError):
        MatrixL1RegNode("l1").copy_to(MatrixL2RegNode("l2"))


def test_duplicate_keeps_node_settings():
    l2 = MatrixL2RegNode("l2", dtype=DTYPE, epsilon=1e-3, nan_check=True)
    nce = NoiseContrastiveEstimationNode("nce", eval_mode=1)

    assert l2.duplicate("copy").epsilon == 1e-3
    assert l2.duplicate("copy").nan_check
    assert nce.duplicate("copy").eval_mode == nce.eval_mode


def test_move_to_device_is_noop_when_resident():
    node = _criterion(MatrixL1RegNode, make_parameter("w", torch.ones(2, 2, dtype=DTYPE)))
    value = node.value

    node.move_to_device("cpu")
    assert node.value is value

    node.move_to_device("cpu", force=True)
    assert node.value is not value
    assert torch.equal(node.value, value)


def test_save_and_load_header():
    node = SquareErrorNode("mse")
    stream = io.BytesIO()
    node.save_to_stream(stream)
    stream.seek(0)

    restored = SquareErrorNode("placeholder")
    restored.load_from_stream(stream)

    assert restored.name == "mse"
    assert stream.tell() == len(stream.getvalue())


def test_load_rejects_other_operation():
    stream = io.BytesIO()
    MatrixL1RegNode("l1").save_to_stream(stream)
    stream.seek(0)

    with pytest.raises(SerializationError):
        MatrixL2RegNode("l2").load_from_stream(stream)


def test_load_from_truncated_stream():
    stream = io.BytesIO()
    SquareErrorNode("mse").save_to_stream(stream)
    stream = io.BytesIO(stream.getvalue()[:-2])

    with pytest.raises(SerializationError):
        SquareErrorNode("mse").load_from_stream(stream)
