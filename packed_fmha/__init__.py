"""
Packed fused multi-head attention.

Host-side orchestration for fused attention over variable-length batches:
sequences are concatenated along the token axis and described by cumulative
offsets. The entry points validate inputs, derive padded geometry, allocate
scratch, fill the kernel parameter record, manage the dropout RNG and dispatch
to a kernel backend.

The surface below is the stable API. Submodules stay importable for backends
and tests.
"""

from .context import FmhaContext
from .device import DeviceProperties
from .errors import ConfigurationConflict, FmhaError, InvalidArgument, UnsupportedConfiguration
from .interface import BackwardResult, ForwardResult, mha_bwd, mha_bwd_block, mha_fwd, mha_fwd_block
from .rng import PhiloxGenerator, PhiloxState

__version__ = "0.1.0"

__all__ = [
    "BackwardResult",
    "ConfigurationConflict",
    "DeviceProperties",
    "FmhaContext",
    "FmhaError",
    "ForwardResult",
    "InvalidArgument",
    "PhiloxGenerator",
    "PhiloxState",
    "UnsupportedConfiguration",
    "mha_bwd",
    "mha_bwd_block",
    "mha_fwd",
    "mha_fwd_block",
]
