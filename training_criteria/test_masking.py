"""
Training Criteria - Sequence Mask Tests

Padding columns must not change any loss or receive any gradient, and the
order of the parallel sequences in a minibatch must not matter.

Run: pytest training_criteria/test_masking.py
"""

import pytest
import torch

from training_criteria.conftest import DTYPE, make_input, make_parameter
from training_criteria.core.errors import ShapeError
from training_criteria.nodes import (
    CrossEntropyNode,
    CrossEntropyWithSoftmaxNode,
    MatrixL1RegNode,
    MatrixL2RegNode,
    SquareErrorNode,
)
from training_criteria.tensor.layout import MinibatchLayout, MinibatchPackingFlags

# Criteria taking (label-like, prediction-like) inputs of the same shape
PAIRWISE = [SquareErrorNode, CrossEntropyNode, CrossEntropyWithSoftmaxNode]
SINGLE = [MatrixL1RegNode, MatrixL2RegNode]


def _pairwise_inputs(rows: int, cols: int, rng: torch.Generator):
    label = torch.softmax(torch.randn(rows, cols, generator=rng, dtype=DTYPE), dim=0)
    prediction = torch.softmax(torch.randn(rows, cols, generator=rng, dtype=DTYPE), dim=0)
    return label, prediction


def _build(node_cls, values, layout=None):
    node = node_cls("criterion", dtype=DTYPE)
    leaves = [make_input("x0", values[0])] + [make_parameter(f"x{i}", v) for i, v in enumerate(values[1:], 1)]
    node.set_inputs(leaves)
    node.validate()
    node.set_layout(layout)
    return node


def _backward(node, index: int) -> torch.Tensor:
    node.gradient.fill_(1.0)
    node.inputs[index].zero_gradient()
    node.compute_gradient(index)
    return node.inputs[index].gradient


# ═════════════════════════════════════════════════════════════════════════════════
# Layout
# ═════════════════════════════════════════════════════════════════════════════════

def test_layout_column_order():
    layout = MinibatchLayout.from_sequence_lengths([3, 1])

    # column t * S + s
    assert layout.missing_columns().tolist() == [False, False, False, True, False, True]
    assert layout.column_to_time_and_sequence(5) == (2, 1)
    assert layout.get(0, 0) == MinibatchPackingFlags.SEQUENCE_START
    assert layout.get(1, 0) == MinibatchPackingFlags.SEQUENCE_START | MinibatchPackingFlags.SEQUENCE_END


def test_layout_flag_selection():
    layout = MinibatchLayout(1, 2)
    layout.set(0, 1, MinibatchPackingFlags.NO_FEATURE)

    assert layout.is_missing(0, 1)
    assert not layout.is_missing(0, 1, MinibatchPackingFlags.NO_LABEL)
    assert not layout.is_all_none()


def test_mask_columns_zeroes_padding_only():
    layout = MinibatchLayout.from_sequence_lengths([2, 1])
    matrix = torch.ones(2, 4)

    assert layout.mask_columns(matrix)
    assert matrix.tolist() == [[1, 1, 1, 0], [1, 1, 1, 0]]
    assert not MinibatchLayout(2, 2).mask_columns(torch.ones(2, 4))


def test_mask_columns_checks_width():
    layout = MinibatchLayout.from_sequence_lengths([2, 1])

    with pytest.raises(ShapeError):
        layout.mask_columns(torch.ones(2, 3))


# ═════════════════════════════════════════════════════════════════════════════════
# Padding Invariance
# ═════════════════════════════════════════════════════════════════════════════════

@pytest.mark.parametrize("node_cls", PAIRWISE)
def test_padding_column_equals_removed_column(node_cls, rng):
    label, prediction = _pairwise_inputs(3, 3, rng)
    # single sequence of length 2 padded to 3 steps; column 2 holds junk
    layout = MinibatchLayout.from_sequence_lengths([2], num_time_steps=3)
    label[:, 2] = torch.tensor([5.0, -1.0, 2.0], dtype=DTYPE)

    padded = _build(node_cls, [label, prediction], layout)
    trimmed = _build(node_cls, [label[:, :2].clone(), prediction[:, :2].clone()])

    assert padded.evaluate_forward() == pytest.approx(trimmed.evaluate_forward())
    for index in node_cls.GRADIENT_INPUTS:
        padded_grad = _backward(padded, index)
        trimmed_grad = _backward(trimmed, index)
        assert torch.allclose(padded_grad[:, :2], trimmed_grad)
        assert torch.count_nonzero(padded_grad[:, 2]) == 0


@pytest.mark.parametrize("node_cls", SINGLE)
def test_regularizer_padding_column_equals_removed_column(node_cls, rng):
    x = torch.randn(2, 4, generator=rng, dtype=DTYPE)
    layout = MinibatchLayout.from_sequence_lengths([2, 1], num_time_steps=2)

    padded = _build(node_cls, [x], layout)
    trimmed = _build(node_cls, [x[:, :3].clone()])

    assert padded.evaluate_forward() == pytest.approx(trimmed.evaluate_forward())
    padded_grad = _backward(padded, 0)
    assert torch.allclose(padded_grad[:, :3], _backward(trimmed, 0))
    assert torch.count_nonzero(padded_grad[:, 3]) == 0


def test_logits_gradient_keeps_padding_from_other_consumers(rng):
    label, prediction = _pairwise_inputs(3, 3, rng)
    layout = MinibatchLayout.from_sequence_lengths([2], num_time_steps=3)
    node = _build(CrossEntropyWithSoftmaxNode, [label, prediction], layout)
    node.evaluate_forward()

    node.gradient.fill_(1.0)
    node.inputs[1].zero_gradient()
    node.compute_gradient(1)
    own = node.inputs[1].gradient.clone()

    # another consumer of the logits has already accumulated into every column
    node.inputs[1].gradient.fill_(0.5)
    node.compute_gradient(1)

    assert torch.allclose(node.inputs[1].gradient, own + 0.5)
    assert torch.all(node.inputs[1].gradient[:, 2] == 0.5)


def test_all_none_layout_changes_nothing(rng):
    label, prediction = _pairwise_inputs(3, 4, rng)
    plain = _build(CrossEntropyWithSoftmaxNode, [label, prediction])
    flagged = _build(CrossEntropyWithSoftmaxNode, [label, prediction], MinibatchLayout(2, 2))

    assert flagged.evaluate_forward() == pytest.approx(plain.evaluate_forward())


# ═════════════════════════════════════════════════════════════════════════════════
# Sequence Order Invariance
# ═════════════════════════════════════════════════════════════════════════════════

def _permute_columns(matrix: torch.Tensor, order, num_sequences: int) -> torch.Tensor:
    permuted = torch.empty_like(matrix)
    for column in range(matrix.shape[1]):
        t, s = divmod(column, num_sequences)
        permuted[:, column] = matrix[:, t * num_sequences + order[s]]
    return permuted


@pytest.mark.parametrize("node_cls", PAIRWISE + SINGLE)
def test_sequence_permutation_leaves_loss_unchanged(node_cls, rng):
    layout = MinibatchLayout.from_sequence_lengths([3, 1, 2])
    order = [2, 0, 1]
    values = list(_pairwise_inputs(2, layout.num_columns, rng))
    if node_cls in SINGLE:
        values = values[1:]

    original = _build(node_cls, values, layout)
    permuted = _build(
        node_cls,
        [_permute_columns(v, order, 3) for v in values],
        layout.permuted(order),
    )

    assert permuted.evaluate_forward() == pytest.approx(original.evaluate_forward())
