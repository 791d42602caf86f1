"""
Scratch and output buffers for one packed FMHA call.

Decides which temporaries a call needs from its geometry, allocates them
through an injectable allocator and applies the zero-fill policy. The
log-sum-exp buffer is filled with -inf (the identity of a max/log-sum-exp
reduction), never with zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import torch

from packed_fmha.geometry import BatchGeometry


LOGGER = logging.getLogger(__name__)


class TorchAllocator:
    """Default device allocator: torch.empty / torch.zeros."""

    def allocate(
        self,
        shape: Sequence[int],
        dtype: torch.dtype,
        device: torch.device,
        zero: bool = False,
    ) -> torch.Tensor:
        factory = torch.zeros if zero else torch.empty
        return factory(tuple(shape), dtype=dtype, device=device)


@dataclass
class ForwardBuffers:
    out: torch.Tensor
    o_tmp: Optional[torch.Tensor]
    softmax_lse: torch.Tensor
    softmax: Optional[torch.Tensor]


@dataclass
class BackwardBuffers:
    dq_tmp: Optional[torch.Tensor]
    softmax_lse: torch.Tensor
    softmax_d: torch.Tensor


def plan_forward_buffers(
    allocator: TorchAllocator,
    geometry: BatchGeometry,
    out: torch.Tensor,
    *,
    batch_size: int,
    total_q: int,
    num_heads: int,
    head_dim: int,
    return_softmax: bool,
    zero_tensors: bool,
) -> ForwardBuffers:
    device = out.device
    o_tmp = None
    if geometry.loop:
        o_tmp = allocator.allocate((total_q, num_heads, head_dim), torch.float32, device)

    softmax_lse = allocator.allocate((batch_size, num_heads, geometry.max_seqlen_q), torch.float32, device)

    softmax = None
    if return_softmax:
        softmax = allocator.allocate(
            (batch_size, num_heads, geometry.max_seqlen_q, geometry.max_seqlen_k), out.dtype, device
        )

    if zero_tensors:
        out.zero_()
        softmax_lse.fill_(float("-inf"))
        if softmax is not None:
            softmax.zero_()

    LOGGER.debug(
        "forward buffers: o_tmp=%s softmax_lse=%s softmax=%s zero_tensors=%s",
        None if o_tmp is None else tuple(o_tmp.shape),
        tuple(softmax_lse.shape),
        None if softmax is None else tuple(softmax.shape),
        zero_tensors,
    )
    return ForwardBuffers(out=out, o_tmp=o_tmp, softmax_lse=softmax_lse, softmax=softmax)


def plan_block_forward_buffers(
    allocator: TorchAllocator,
    geometry: BatchGeometry,
    q: torch.Tensor,
    *,
    batch_size: int,
    total_q: int,
    num_heads: int,
    head_dim: int,
    return_softmax: bool,
) -> ForwardBuffers:
    """Block-sparse forward owns its output; output and softmax dump start zeroed."""
    device = q.device
    out = allocator.allocate((total_q, num_heads, head_dim), q.dtype, device, zero=True)
    o_tmp = None
    if geometry.loop:
        o_tmp = allocator.allocate((total_q, num_heads, head_dim), torch.float32, device)
    softmax_lse = allocator.allocate((batch_size, num_heads, geometry.max_seqlen_q), torch.float32, device)
    softmax = None
    if return_softmax:
        softmax = allocator.allocate(
            (batch_size, num_heads, geometry.max_seqlen_q, geometry.max_seqlen_k), q.dtype, device, zero=True
        )
    return ForwardBuffers(out=out, o_tmp=o_tmp, softmax_lse=softmax_lse, softmax=softmax)


def plan_backward_buffers(
    allocator: TorchAllocator,
    geometry: BatchGeometry,
    softmax_lse_: torch.Tensor,
    *,
    dq: torch.Tensor,
    dk: torch.Tensor,
    dv: torch.Tensor,
    batch_size: int,
    total_q: int,
    num_heads: int,
    head_dim: int,
    zero_tensors: bool,
) -> BackwardBuffers:
    device = dq.device
    # Forward may have padded the statistics differently; keep the rows this geometry reads.
    softmax_lse = softmax_lse_[:, :, : geometry.max_seqlen_q].contiguous()

    softmax_d = allocator.allocate((batch_size, num_heads, geometry.max_seqlen_q), torch.float32, device)
    dq_tmp = None
    if geometry.loop:
        dq_tmp = allocator.allocate((total_q, num_heads, head_dim), torch.float32, device)

    if zero_tensors:
        dq.zero_()
        dk.zero_()
        dv.zero_()
        softmax_d.zero_()

    LOGGER.debug(
        "backward buffers: dq_tmp=%s softmax_lse=%s softmax_d=%s zero_tensors=%s",
        None if dq_tmp is None else tuple(dq_tmp.shape),
        tuple(softmax_lse.shape),
        tuple(softmax_d.shape),
        zero_tensors,
    )
    return BackwardBuffers(dq_tmp=dq_tmp, softmax_lse=softmax_lse, softmax_d=softmax_d)


def ensure_split_scratch(
    allocator: TorchAllocator,
    buffers: BackwardBuffers,
    *,
    total_q: int,
    num_heads: int,
    head_dim: int,
    device: torch.device,
) -> torch.Tensor:
    """
    Multi-split backward accumulates dq across splits, so its scratch must start
    at zero: allocate it zeroed if geometry did not ask for one, else clear it.
    """
    if buffers.dq_tmp is None:
        buffers.dq_tmp = allocator.allocate((total_q, num_heads, head_dim), torch.float32, device, zero=True)
    else:
        buffers.dq_tmp.zero_()
    return buffers.dq_tmp


__all__ = [
    "BackwardBuffers",
    "ForwardBuffers",
    "TorchAllocator",
    "ensure_split_scratch",
    "plan_backward_buffers",
    "plan_block_forward_buffers",
    "plan_forward_buffers",
]
