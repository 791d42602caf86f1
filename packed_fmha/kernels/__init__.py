"""
Kernel backends.

The host layer only talks to `packed_fmha.dispatch.KernelBackend`; compiled
fused kernels plug in by implementing it. The reference backend here runs the
same launch records with plain PyTorch ops.
"""

from .reference import ReferenceKernels, dropout_keep_mask

__all__ = [
    "ReferenceKernels",
    "dropout_keep_mask",
]
