# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Kernels Package
# ════════════════════════════════════════════════════════════════════════════════
# Pure-function numeric routines behind the CRF and NCE criteria.
# ════════════════════════════════════════════════════════════════════════════════

from training_criteria.kernels import crf, nce

__all__ = ["crf", "nce"]
