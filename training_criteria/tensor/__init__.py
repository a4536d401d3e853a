# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Tensor Package
# ════════════════════════════════════════════════════════════════════════════════
# Sequence mask and the torch operations criterion nodes are built from.
# ════════════════════════════════════════════════════════════════════════════════

from training_criteria.tensor.layout import (
    MinibatchPackingFlags,
    MinibatchLayout,
    mask_to_zero_when_label_and_feature_missing,
)

from training_criteria.tensor.ops import (
    log_add_elementwise,
    log_add_sum,
    inner_product,
    frobenius_norm,
    matrix_norm1,
    add_with_scale_of,
    add_scaled_difference,
    minus_one_at,
    assign_sign_of,
    upstream_scalar,
    transfer_to_device,
    has_nan,
)

__all__ = [
    # Layout
    "MinibatchPackingFlags",
    "MinibatchLayout",
    "mask_to_zero_when_label_and_feature_missing",
    # Ops
    "log_add_elementwise",
    "log_add_sum",
    "inner_product",
    "frobenius_norm",
    "matrix_norm1",
    "add_with_scale_of",
    "add_scaled_difference",
    "minus_one_at",
    "assign_sign_of",
    "upstream_scalar",
    "transfer_to_device",
    "has_nan",
]
