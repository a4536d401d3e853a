# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Error Hierarchy
# ════════════════════════════════════════════════════════════════════════════════
# Error types raised by criterion nodes and their configuration layer.
# All errors carry structured context for debugging.
#
# Design Principles:
# - Exception hierarchy mirrors criterion failure modes
# - Every error here is unrecoverable at the node layer and propagates to
#   the graph executor
# - Context dict for structured logging
# - Chaining via __cause__ for root cause analysis
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


# ═════════════════════════════════════════════════════════════════════════════════
# Base Criterion Error
# ═════════════════════════════════════════════════════════════════════════════════

@dataclass
class CriterionError(Exception):
    """
    Base exception for all criterion-node errors.

    Attributes:
        message: Human-readable error description
        context: Structured key-value context for debugging
        cause: Original exception that caused this error
        remediation: Suggested fix or next steps
    """
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    cause: Optional[Exception] = None
    remediation: Optional[str] = None

    def __post_init__(self) -> None:
        """Chain cause exception for traceback preservation."""
        super().__init__(self.message)
        if self.cause is not None:
            self.__cause__ = self.cause

    def __str__(self) -> str:
        parts = [f"{type(self).__name__}: {self.message}"]

        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"  Context: {ctx_str}")

        if self.remediation:
            parts.append(f"  Remediation: {self.remediation}")

        if self.cause:
            parts.append(f"  Caused by: {type(self.cause).__name__}: {self.cause}")

        return "\n".join(parts)

    def with_context(self, **kwargs: Any) -> "CriterionError":
        """Add additional context, returns self for chaining."""
        self.context.update(kwargs)
        return self


# ═════════════════════════════════════════════════════════════════════════════════
# Graph Construction Errors
# ═════════════════════════════════════════════════════════════════════════════════

@dataclass
class ShapeError(CriterionError):
    """
    Operand shapes or arity are incompatible with the criterion.

    Raised from validate() when:
    - The number of attached inputs differs from the node's arity
    - An operand has zero elements
    - Row/column counts of operands disagree
    """
    operation: Optional[str] = None
    expected: Optional[str] = None
    got: Optional[str] = None

    def __str__(self) -> str:
        op_info = f" [{self.operation}]" if self.operation else ""
        parts = [f"ShapeError{op_info}: {self.message}"]

        if self.expected is not None and self.got is not None:
            parts.append(f"  Expected: {self.expected}")
            parts.append(f"  Got: {self.got}")

        if self.remediation:
            parts.append(f"  Remediation: {self.remediation}")

        return "\n".join(parts)


@dataclass
class StructuralPreconditionError(CriterionError):
    """
    An input expected to be a leaf (label/feature) node is a derived node.
    """
    operation: Optional[str] = None
    input_index: Optional[int] = None
    got_operation: Optional[str] = None

    def __str__(self) -> str:
        parts = [f"StructuralPreconditionError [{self.operation}]: {self.message}"]
        if self.input_index is not None:
            parts.append(f"  Input {self.input_index} is a {self.got_operation} node")
        return "\n".join(parts)


# ═════════════════════════════════════════════════════════════════════════════════
# Evaluation Errors
# ═════════════════════════════════════════════════════════════════════════════════

@dataclass
class InvalidGradientTargetError(CriterionError):
    """
    compute_gradient() called for an input with no defined derivative.

    Always a programming error in the caller (label inputs, externally
    supplied objective/derivative features, NCE sample input).
    """
    operation: Optional[str] = None
    input_index: Optional[int] = None

    def __str__(self) -> str:
        idx_info = f" (input {self.input_index})" if self.input_index is not None else ""
        return f"InvalidGradientTargetError [{self.operation}]{idx_info}: {self.message}"


@dataclass
class NumericAnomalyError(CriterionError):
    """
    NaN or Inf detected in a criterion output.

    Only raised when the nan_check debug option is enabled.

    Common causes:
    - log of a zero probability in CrossEntropy
    - Exploding logits upstream
    """
    operation: Optional[str] = None

    def __str__(self) -> str:
        return (f"NumericAnomalyError [{self.operation}]: {self.message}\n"
                f"  Remediation: Check upstream activations and label ranges")


@dataclass
class LabelError(CriterionError):
    """
    Label content is inconsistent with the criterion's label layout.

    Raised when:
    - A class-based label names a word but its class range is empty
    - A word index lies outside its class range
    - A class index exceeds the number of classes
    - An NCE evaluation label mixes positive and negative entries
    - A CRF sequence has no active label at its first position
    """
    operation: Optional[str] = None
    column: Optional[int] = None

    def __str__(self) -> str:
        col_info = f" at column {self.column}" if self.column is not None else ""
        parts = [f"LabelError [{self.operation}]{col_info}: {self.message}"]
        if self.remediation:
            parts.append(f"  Remediation: {self.remediation}")
        return "\n".join(parts)


@dataclass
class EvalModeError(CriterionError):
    """
    Operation requested in an evaluation mode that does not support it.
    """
    operation: Optional[str] = None
    eval_mode: Optional[str] = None

    def __str__(self) -> str:
        return f"EvalModeError [{self.operation}] in mode {self.eval_mode}: {self.message}"


@dataclass
class DevicePlacementError(CriterionError):
    """
    A tensor resides on a device the criterion cannot work with.
    """
    operation: Optional[str] = None
    device: Optional[str] = None

    def __str__(self) -> str:
        dev_info = f" on {self.device}" if self.device else ""
        return f"DevicePlacementError [{self.operation}]{dev_info}: {self.message}"


@dataclass
class SerializationError(CriterionError):
    """
    Persisted node state could not be read back.
    """
    position: Optional[int] = None

    def __str__(self) -> str:
        pos_info = f" at byte {self.position}" if self.position is not None else ""
        return f"SerializationError{pos_info}: {self.message}"


# ═════════════════════════════════════════════════════════════════════════════════
# Configuration Errors
# ═════════════════════════════════════════════════════════════════════════════════

@dataclass
class ConfigurationError(CriterionError):
    """
    Error in criterion configuration (YAML or programmatic).
    """
    field_path: Optional[str] = None
    expected: Optional[str] = None
    got: Optional[str] = None
    yaml_file: Optional[str] = None

    def __str__(self) -> str:
        parts = [f"ConfigurationError: {self.message}"]

        if self.yaml_file:
            parts.append(f"  File: {self.yaml_file}")

        if self.field_path:
            parts.append(f"  Field: {self.field_path}")

        if self.expected and self.got:
            parts.append(f"  Expected: {self.expected}")
            parts.append(f"  Got: {self.got}")

        if self.remediation:
            parts.append(f"  Remediation: {self.remediation}")

        return "\n".join(parts)


@dataclass
class YAMLParseError(ConfigurationError):
    """
    Error parsing YAML configuration file.

    Provides line/column info for syntax errors.
    """
    line: Optional[int] = None
    column: Optional[int] = None

    def __str__(self) -> str:
        location = ""
        if self.line is not None:
            location = f" at line {self.line}"
            if self.column is not None:
                location += f", column {self.column}"

        file_info = f" in {self.yaml_file}" if self.yaml_file else ""
        return f"YAMLParseError{file_info}{location}: {self.message}"


@dataclass
class SchemaValidationError(ConfigurationError):
    """
    Pydantic schema validation failed.
    """
    validation_errors: Tuple[str, ...] = field(default_factory=tuple)

    def __str__(self) -> str:
        parts = [f"SchemaValidationError: {self.message}"]

        if self.yaml_file:
            parts.append(f"  File: {self.yaml_file}")

        for error in self.validation_errors:
            parts.append(f"  - {error}")

        return "\n".join(parts)


# ═════════════════════════════════════════════════════════════════════════════════
# Export
# ═════════════════════════════════════════════════════════════════════════════════

__all__ = [
    # Base
    "CriterionError",
    # Graph construction
    "ShapeError",
    "StructuralPreconditionError",
    # Evaluation
    "InvalidGradientTargetError",
    "NumericAnomalyError",
    "LabelError",
    "EvalModeError",
    "DevicePlacementError",
    "SerializationError",
    # Configuration
    "ConfigurationError",
    "YAMLParseError",
    "SchemaValidationError",
]
