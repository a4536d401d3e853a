# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Computation Node Base
# ════════════════════════════════════════════════════════════════════════════════
# Node contract shared by every criterion.
#
# A node owns its function value, its gradient (same shape as the value) and
# any scratch tensors its forward pass leaves for the backward pass. Inputs
# are non-owning references to other nodes; the graph executor owns them.
#
# Execution model:
#   validate()               once the inputs are attached and sized
#   evaluate_forward()       in topological order
#   compute_gradient(i)      in reverse order; always ADDS into input i
#
# Design Principles:
# - Element type and device are runtime choices, set per node
# - The sequence mask is handed to each node explicitly via set_layout()
# - Numeric work lives in pure functions; methods gather state and dispatch
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import abc
import logging
from typing import BinaryIO, ClassVar, List, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from training_criteria.core.errors import (
    InvalidGradientTargetError,
    NumericAnomalyError,
    SerializationError,
    ShapeError,
    StructuralPreconditionError,
)
from training_criteria.core.stream import read_string, write_string
from training_criteria.core.types import CopyNodeFlags, ImageLayout
from training_criteria.tensor.layout import MinibatchLayout
from training_criteria.tensor.ops import has_nan, transfer_to_device, upstream_scalar

logger = logging.getLogger(__name__)

Device = Union[str, torch.device]


# ═════════════════════════════════════════════════════════════════════════════════
# Computation Node
# ═════════════════════════════════════════════════════════════════════════════════

class ComputationNode(abc.ABC):
    """
    Graph node with a value, a gradient and optional scratch tensors.

    Subclasses declare:
        OPERATION_NAME: name reported and persisted for the node type
        SCRATCH_TENSORS: attribute names of owned scratch tensors
    """

    OPERATION_NAME: ClassVar[str] = ""
    SCRATCH_TENSORS: ClassVar[Tuple[str, ...]] = ()

    def __init__(
        self,
        name: str,
        device: Device = "cpu",
        dtype: torch.dtype = torch.float32,
    ):
        self.name = name
        self.device = torch.device(device)
        self.dtype = dtype
        self.inputs: List[ComputationNode] = []
        self.layout: Optional[MinibatchLayout] = None
        self.image_layout = ImageLayout()

        self.value = self._empty()
        self.gradient = self._empty()
        for attr in self.SCRATCH_TENSORS:
            setattr(self, attr, self._empty())

    @property
    def operation_name(self) -> str:
        return self.OPERATION_NAME

    def _empty(self, rows: int = 0, cols: int = 0) -> Tensor:
        return torch.zeros(rows, cols, dtype=self.dtype, device=self.device)

    def _tensor_attributes(self) -> Tuple[str, ...]:
        return ("value", "gradient") + self.SCRATCH_TENSORS

    # ─────────────────────────────────────────────────────────────────────────
    # Graph Wiring
    # ─────────────────────────────────────────────────────────────────────────

    def set_inputs(self, nodes: Sequence["ComputationNode"]) -> None:
        """Bind inputs from a sequence; arity is checked by validate()."""
        self.inputs = list(nodes)

    def input(self, index: int) -> "ComputationNode":
        return self.inputs[index]

    def set_layout(self, layout: Optional[MinibatchLayout]) -> None:
        """Attach the sequence mask of the current minibatch."""
        self.layout = layout

    # ─────────────────────────────────────────────────────────────────────────
    # Value & Gradient
    # ─────────────────────────────────────────────────────────────────────────

    def set_value(self, value: Tensor) -> None:
        """Replace the function value, converting to the node's dtype/device."""
        if value.dim() != 2:
            raise ShapeError(
                message="Node values are 2-D tensors",
                operation=self.OPERATION_NAME,
                expected="2 dimensions",
                got=f"{value.dim()} dimensions",
            )
        self.value = value.to(device=self.device, dtype=self.dtype).clone()

    def ensure_gradient(self) -> Tensor:
        """Size the gradient like the value; an existing same-shape gradient is kept."""
        if self.gradient.shape != self.value.shape:
            self.gradient = torch.zeros_like(self.value)
        return self.gradient

    def zero_gradient(self) -> None:
        self.ensure_gradient().zero_()

    # ─────────────────────────────────────────────────────────────────────────
    # Device Placement
    # ─────────────────────────────────────────────────────────────────────────

    def move_to_device(self, device: Device, force: bool = False) -> None:
        """
        Migrate every owned tensor to device.

        A no-op when the node is already resident and force is not set.
        """
        target = torch.device(device)
        if target == self.device and not force:
            return
        logger.debug(f"Moving node '{self.name}' ({self.OPERATION_NAME}) from {self.device} to {target}")
        for attr in self._tensor_attributes():
            setattr(self, attr, transfer_to_device(getattr(self, attr), target, force=force))
        self.device = target

    # ─────────────────────────────────────────────────────────────────────────
    # Copy & Duplicate
    # ─────────────────────────────────────────────────────────────────────────

    def copy_to(self, target: "ComputationNode", flags: CopyNodeFlags = CopyNodeFlags.COPY_NODE_ALL) -> None:
        """
        Copy state into target, a node of the same type.

        COPY_NODE_VALUE deep-copies owned tensors and extra state,
        COPY_NODE_CHILDREN shares the input references.
        """
        if type(target) is not type(self):
            raise TypeError(f"Cannot copy {type(self).__name__} into {type(target).__name__}")

        if flags & CopyNodeFlags.COPY_NODE_VALUE:
            for attr in self._tensor_attributes():
                setattr(target, attr, getattr(self, attr).clone())
            target.image_layout = self.image_layout
            target.layout = self.layout
            self._copy_extra_state(target)

        if flags & CopyNodeFlags.COPY_NODE_CHILDREN:
            target.inputs = list(self.inputs)

    def _copy_extra_state(self, target: "ComputationNode") -> None:
        """Hook for non-tensor state copied with COPY_NODE_VALUE."""

    def duplicate(
        self,
        new_name: str,
        flags: CopyNodeFlags = CopyNodeFlags.COPY_NODE_ALL,
    ) -> "ComputationNode":
        node = type(self)(new_name, device=self.device, dtype=self.dtype)
        self.copy_to(node, flags)
        return node

    # ─────────────────────────────────────────────────────────────────────────
    # Serialization
    # ─────────────────────────────────────────────────────────────────────────

    def save_to_stream(self, stream: BinaryIO) -> None:
        write_string(stream, self.OPERATION_NAME)
        write_string(stream, self.name)

    def load_from_stream(self, stream: BinaryIO) -> None:
        position = stream.tell()
        operation = read_string(stream)
        if operation != self.OPERATION_NAME:
            raise SerializationError(
                message=f"Stream holds a {operation} node, expected {self.OPERATION_NAME}",
                position=position,
            )
        self.name = read_string(stream)

    def infer_image_dims(self) -> None:
        """Take the sample geometry from input 0 when there is one."""
        if self.inputs:
            self.image_layout = self.inputs[0].image_layout

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(name={self.name!r}, value={tuple(self.value.shape)}, "
                f"device={self.device}, dtype={self.dtype})")


# ═════════════════════════════════════════════════════════════════════════════════
# Leaf Nodes
# ═════════════════════════════════════════════════════════════════════════════════

class _LeafNode(ComputationNode):
    def __init__(
        self,
        name: str,
        rows: int = 0,
        cols: int = 0,
        device: Device = "cpu",
        dtype: torch.dtype = torch.float32,
    ):
        super().__init__(name, device=device, dtype=dtype)
        self.value = self._empty(rows, cols)
        self.gradient = self._empty(rows, cols)
        self.image_layout = ImageLayout(height=rows)

    def resize(self, rows: int, cols: int) -> None:
        self.value = self._empty(rows, cols)
        self.gradient = self._empty(rows, cols)


class InputValueNode(_LeafNode):
    """Labels and features fed by the reader."""
    OPERATION_NAME = "InputValue"


class LearnableParameterNode(_LeafNode):
    """Trainable weights; may be created with unknown (zero) dimensions."""
    OPERATION_NAME = "LearnableParameter"

    @property
    def has_no_elements(self) -> bool:
        return self.value.numel() == 0


# ═════════════════════════════════════════════════════════════════════════════════
# Criterion Node
# ═════════════════════════════════════════════════════════════════════════════════

class CriterionNode(ComputationNode):
    """
    Node reducing its inputs to a 1x1 loss.

    Subclasses implement:
        attach_inputs(...)          named, fixed-arity binding
        _validate_inputs()          variant shape checks and scratch sizing
        _evaluate()                 forward pass, returns the scalar loss
        _compute_gradient(i)        backward pass for input i
    and declare NUM_INPUTS and GRADIENT_INPUTS.
    """

    NUM_INPUTS: ClassVar[int] = 0
    GRADIENT_INPUTS: ClassVar[Tuple[int, ...]] = ()

    def __init__(
        self,
        name: str,
        device: Device = "cpu",
        dtype: torch.dtype = torch.float32,
        nan_check: bool = False,
        dump_output: bool = False,
    ):
        super().__init__(name, device=device, dtype=dtype)
        self.nan_check = nan_check
        self.dump_output = dump_output

    # ─────────────────────────────────────────────────────────────────────────
    # Contract
    # ─────────────────────────────────────────────────────────────────────────

    def validate(self) -> None:
        if len(self.inputs) != self.NUM_INPUTS:
            raise ShapeError(
                message=f"{self.OPERATION_NAME} requires {self.NUM_INPUTS} inputs",
                operation=self.OPERATION_NAME,
                expected=str(self.NUM_INPUTS),
                got=str(len(self.inputs)),
            )
        self._validate_inputs()
        self.value = self._empty(1, 1)
        self.gradient = self._empty(1, 1)
        self.infer_image_dims()

    def evaluate_forward(self) -> float:
        loss = self._evaluate()
        self.value.fill_(loss)

        if self.dump_output:
            self._dump_tensors()
        if self.nan_check and has_nan(self.value):
            raise NumericAnomalyError(
                message=f"Non-finite output in node '{self.name}'",
                operation=self.OPERATION_NAME,
                context={"value": loss},
            )
        return loss

    def compute_gradient(self, input_index: int) -> None:
        if input_index not in self.GRADIENT_INPUTS:
            raise InvalidGradientTargetError(
                message=f"No gradient is defined for input {input_index}",
                operation=self.OPERATION_NAME,
                input_index=input_index,
            )
        self.inputs[input_index].ensure_gradient()
        self._compute_gradient(input_index)

    def duplicate(
        self,
        new_name: str,
        flags: CopyNodeFlags = CopyNodeFlags.COPY_NODE_ALL,
    ) -> "CriterionNode":
        node = type(self)(
            new_name,
            device=self.device,
            dtype=self.dtype,
            nan_check=self.nan_check,
            dump_output=self.dump_output,
        )
        self.copy_to(node, flags)
        return node

    def infer_image_dims(self) -> None:
        super().infer_image_dims()
        # Input geometry is looked up, but a criterion always emits 1x1x1
        self.image_layout = ImageLayout()

    @abc.abstractmethod
    def _validate_inputs(self) -> None:
        ...

    @abc.abstractmethod
    def _evaluate(self) -> float:
        ...

    @abc.abstractmethod
    def _compute_gradient(self, input_index: int) -> None:
        ...

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers for Subclasses
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def upstream(self) -> float:
        """Scalar gradient of the final loss with respect to this node's output."""
        return upstream_scalar(self.gradient)

    def _missing_columns(self) -> Optional[Tensor]:
        if self.layout is None or self.layout.is_all_none():
            return None
        return self.layout.missing_columns(device=self.device)

    def _infer_learnable_shape(self, index: int, other: int) -> None:
        """Resize a zero-sized LearnableParameter input to another input's shape."""
        node = self.inputs[index]
        if isinstance(node, LearnableParameterNode) and node.has_no_elements:
            rows, cols = self.inputs[other].value.shape
            logger.debug(f"{self.OPERATION_NAME} '{self.name}': sizing parameter '{node.name}' to {rows}x{cols}")
            node.resize(rows, cols)

    def _require_input_value(self, index: int) -> None:
        node = self.inputs[index]
        if not isinstance(node, InputValueNode):
            raise StructuralPreconditionError(
                message=f"{self.OPERATION_NAME} requires input {index} to be an InputValue node",
                operation=self.OPERATION_NAME,
                input_index=index,
                got_operation=node.OPERATION_NAME,
            )

    def _require_non_empty(self, *indices: int) -> None:
        for index in indices:
            shape = tuple(self.inputs[index].value.shape)
            if self.inputs[index].value.numel() == 0:
                raise ShapeError(
                    message=f"Input {index} of {self.OPERATION_NAME} has no elements",
                    operation=self.OPERATION_NAME,
                    expected="non-empty operand",
                    got=f"{shape[0]}x{shape[1]}",
                )

    def _require_same_shape(self, a: int, b: int) -> None:
        shape_a = tuple(self.inputs[a].value.shape)
        shape_b = tuple(self.inputs[b].value.shape)
        if shape_a != shape_b:
            raise ShapeError(
                message=f"Inputs {a} and {b} of {self.OPERATION_NAME} must have the same shape",
                operation=self.OPERATION_NAME,
                expected=f"{shape_a[0]}x{shape_a[1]}",
                got=f"{shape_b[0]}x{shape_b[1]}",
            )

    def _shape_error(self, message: str, expected: object, got: object) -> ShapeError:
        return ShapeError(
            message=message,
            operation=self.OPERATION_NAME,
            expected=str(expected),
            got=str(got),
        )

    def _dump_tensors(self) -> None:
        for attr in self._tensor_attributes():
            tensor = getattr(self, attr)
            logger.debug(f"{self.OPERATION_NAME} '{self.name}' {attr} {tuple(tensor.shape)}:\n{tensor}")


__all__ = [
    "ComputationNode",
    "InputValueNode",
    "LearnableParameterNode",
    "CriterionNode",
]
