# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Minibatch Layout (Sequence Mask)
# ════════════════════════════════════════════════════════════════════════════════
# Per-minibatch metadata for batches that pack several variable-length
# sequences into one dense 2-D tensor.
#
# Column c of a packed tensor holds time step t = c // S of sequence slot
# s = c % S, where S is the number of parallel sequences. Each (s, t) cell
# carries a MinibatchPackingFlags bitmask; cells flagged NO_LABEL or
# NO_FEATURE are padding and must not contribute to any criterion.
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import enum
from typing import Optional, Sequence, Tuple

import torch
from torch import Tensor

from training_criteria.core.errors import ShapeError


class MinibatchPackingFlags(enum.IntFlag):
    NONE = 0
    SEQUENCE_START = 1
    SEQUENCE_END = 2
    NO_FEATURE = 4
    NO_LABEL = 8
    NO_INPUT = NO_FEATURE | NO_LABEL


class MinibatchLayout:
    """
    Validity flags for every (sequence slot, time step) cell of a minibatch.

    Example:
        >>> layout = MinibatchLayout.from_sequence_lengths([3, 2])
        >>> layout.is_missing(1, 2)
        True
        >>> layout.missing_columns().tolist()[5]   # t=2, s=1
        True
    """

    def __init__(self, num_parallel_sequences: int = 1, num_time_steps: int = 0):
        self.init(num_parallel_sequences, num_time_steps)

    def init(self, num_parallel_sequences: int, num_time_steps: int) -> None:
        """Reset to an all-NONE layout of the given size."""
        if num_parallel_sequences < 1:
            raise ValueError(f"num_parallel_sequences must be >= 1, got {num_parallel_sequences}")
        self._num_parallel_sequences = num_parallel_sequences
        self._num_time_steps = num_time_steps
        self._flags = torch.zeros(num_parallel_sequences, num_time_steps, dtype=torch.int32)

    @classmethod
    def from_sequence_lengths(
        cls,
        lengths: Sequence[int],
        num_time_steps: Optional[int] = None,
    ) -> "MinibatchLayout":
        """
        Build a layout for one sequence per slot, padded at the end.

        Args:
            lengths: Valid length of each parallel sequence
            num_time_steps: Padded length (defaults to max(lengths))
        """
        steps = max(lengths) if num_time_steps is None else num_time_steps
        layout = cls(len(lengths), steps)
        for s, length in enumerate(lengths):
            if length > steps:
                raise ValueError(f"sequence {s} has length {length} > {steps} time steps")
            if length > 0:
                layout.set(s, 0, MinibatchPackingFlags.SEQUENCE_START)
                layout.set(s, length - 1, MinibatchPackingFlags.SEQUENCE_END)
            for t in range(length, steps):
                layout.set(s, t, MinibatchPackingFlags.NO_INPUT)
        return layout

    # ─────────────────────────────────────────────────────────────────────────
    # Geometry
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def num_parallel_sequences(self) -> int:
        return self._num_parallel_sequences

    @property
    def num_time_steps(self) -> int:
        return self._num_time_steps

    @property
    def num_columns(self) -> int:
        return self._num_parallel_sequences * self._num_time_steps

    def column_to_time_and_sequence(self, column: int) -> Tuple[int, int]:
        return column // self._num_parallel_sequences, column % self._num_parallel_sequences

    # ─────────────────────────────────────────────────────────────────────────
    # Flags
    # ─────────────────────────────────────────────────────────────────────────

    def set(self, seq: int, t: int, flags: MinibatchPackingFlags) -> None:
        """OR flags into cell (seq, t)."""
        self._flags[seq, t] |= int(flags)

    def get(self, seq: int, t: int) -> MinibatchPackingFlags:
        return MinibatchPackingFlags(int(self._flags[seq, t]))

    def is_all_none(self) -> bool:
        return not bool(self._flags.any())

    def is_missing(self, seq: int, t: int, flags: MinibatchPackingFlags = MinibatchPackingFlags.NO_INPUT) -> bool:
        return bool(int(self._flags[seq, t]) & int(flags))

    def missing_columns(
        self,
        flags: MinibatchPackingFlags = MinibatchPackingFlags.NO_INPUT,
        device: Optional[torch.device] = None,
    ) -> Tensor:
        """Boolean vector over columns, True where the column is padding."""
        # (S, T) -> (T, S) so flattening yields column order t * S + s
        missing = (self._flags & int(flags)).ne(0).t().reshape(-1)
        return missing if device is None else missing.to(device)

    def permuted(self, order: Sequence[int]) -> "MinibatchLayout":
        """Layout with sequence slot order[i] moved to slot i."""
        layout = MinibatchLayout(self._num_parallel_sequences, self._num_time_steps)
        layout._flags = self._flags[list(order)].clone()
        return layout

    # ─────────────────────────────────────────────────────────────────────────
    # Masking
    # ─────────────────────────────────────────────────────────────────────────

    def mask_columns(
        self,
        matrix: Tensor,
        flags: MinibatchPackingFlags = MinibatchPackingFlags.NO_INPUT,
    ) -> bool:
        """
        Zero, in place, every column of matrix that is flagged missing.

        Returns:
            True if at least one column was zeroed
        """
        if self.is_all_none():
            return False
        if matrix.shape[1] != self.num_columns:
            raise ShapeError(
                message="Matrix column count does not match the minibatch layout",
                operation="MaskColumns",
                expected=str(self.num_columns),
                got=str(matrix.shape[1]),
            )
        missing = self.missing_columns(flags, device=matrix.device)
        if not bool(missing.any()):
            return False
        matrix[:, missing] = 0
        return True

    def __repr__(self) -> str:
        return (f"MinibatchLayout(num_parallel_sequences={self._num_parallel_sequences}, "
                f"num_time_steps={self._num_time_steps}, all_none={self.is_all_none()})")


def mask_to_zero_when_label_and_feature_missing(
    layout: Optional[MinibatchLayout],
    matrix: Tensor,
) -> bool:
    """Zero padding columns of matrix; a missing layout means no padding."""
    if layout is None:
        return False
    return layout.mask_columns(matrix)


__all__ = [
    "MinibatchPackingFlags",
    "MinibatchLayout",
    "mask_to_zero_when_label_and_feature_missing",
]
