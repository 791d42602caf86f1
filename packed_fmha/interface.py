"""
Packed (variable-length) fused multi-head attention: host entry points.

Four calls, mirroring the kernel families:

    mha_fwd / mha_bwd              dense or causal attention
    mha_fwd_block / mha_bwd_block  block-sparse attention

Each call validates its inputs, derives padded geometry, allocates scratch,
fills a fresh parameter record, attaches a Philox state when dropout is on and
submits one kernel on the current stream. Nothing waits for the kernel; the
caller owns synchronization.

Dropout reproducibility: forward and backward derive the mask from the
generator's (seed, offset). To replay a forward's mask in backward, snapshot
`generator.get_state()` before the forward and `set_state` it before the
backward.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, NamedTuple, Optional

import torch

from packed_fmha.allocation import (
    ensure_split_scratch,
    plan_backward_buffers,
    plan_block_forward_buffers,
    plan_forward_buffers,
)
from packed_fmha.context import FmhaContext
from packed_fmha.dispatch import profile_dispatch, select_kernel, variant_for
from packed_fmha.errors import InvalidArgument
from packed_fmha.geometry import resolve_block_geometry, resolve_geometry
from packed_fmha.params import (
    BackwardParams,
    ForwardParams,
    LaunchParams,
    describe_params,
    set_params_dgrad,
    set_params_fprop,
)
from packed_fmha.rng import (
    BLOCK_BWD_COUNTER_OFFSET,
    PhiloxGenerator,
    acquire_philox_state,
    counter_offset,
)
from packed_fmha.validation import (
    check_blockmask,
    check_softmax_lse,
    validate_backward,
    validate_block_forward,
    validate_forward,
)


LOGGER = logging.getLogger(__name__)


class ForwardResult(NamedTuple):
    out: torch.Tensor
    softmax_lse: torch.Tensor
    softmax: Optional[torch.Tensor]


class BackwardResult(NamedTuple):
    dq: torch.Tensor
    dk: torch.Tensor
    dv: torch.Tensor
    softmax_d: torch.Tensor


def _resolve_context(context: Optional[FmhaContext], q: torch.Tensor) -> FmhaContext:
    if context is not None:
        return context
    if q.device.type != "cuda":
        raise InvalidArgument(f"q must be on a cuda device without an explicit context, got {q.device}")
    return FmhaContext.for_device(q.device)


def _softmax_scale(softmax_scale: Optional[float], head_dim: int) -> float:
    if softmax_scale is None:
        return 1.0 / math.sqrt(head_dim)
    return float(softmax_scale)


def _tensors(**named: Optional[torch.Tensor]) -> Dict[str, torch.Tensor]:
    return {name: t for name, t in named.items() if t is not None}


def _attach_philox(params: ForwardParams, generator: PhiloxGenerator, increment: int) -> None:
    params.philox_args = acquire_philox_state(generator, increment)


def _log_launch(context: FmhaContext, kernel, params: ForwardParams) -> None:
    LOGGER.debug(
        "launch %s b=%d h=%d d=%d seqlen_q=%d seqlen_k=%d causal=%s splits=%d dropout_keep=%.4f",
        kernel.__name__, params.b, params.h, params.d, params.seqlen_q, params.seqlen_k,
        params.is_causal, params.num_splits, params.p_dropout,
    )
    if context.config.log_params:
        LOGGER.debug("params: %s", describe_params(params))


def mha_fwd(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    out: torch.Tensor,
    cu_seqlens_q: torch.Tensor,
    cu_seqlens_k: torch.Tensor,
    max_seqlen_q: int,
    max_seqlen_k: int,
    *,
    p_dropout: float = 0.0,
    softmax_scale: Optional[float] = None,
    zero_tensors: bool = False,
    is_causal: bool = False,
    return_softmax: bool = False,
    num_splits: int = 1,
    generator: Optional[PhiloxGenerator] = None,
    context: Optional[FmhaContext] = None,
) -> ForwardResult:
    """
    Dense / causal forward over a packed batch.

    Args:
        q: (total_q, H, D); k, v: (total_k, H, D); out: (total_q, H, D), written in place
        cu_seqlens_q, cu_seqlens_k: int32 (B + 1,) cumulative sequence offsets
        max_seqlen_q, max_seqlen_k: upper bounds on the per-sequence lengths

    Returns:
        ForwardResult(out, softmax_lse (B, H, padded_q) float32, softmax or None)
    """
    ctx = _resolve_context(context, q)
    gen = generator if generator is not None else ctx.generator
    with profile_dispatch("fwd", ctx.config.profile):
        shape = validate_forward(
            q, k, v, out, cu_seqlens_q, cu_seqlens_k,
            props=ctx.device_props,
            device_type=ctx.device_type,
            p_dropout=p_dropout,
            max_seqlen_q=max_seqlen_q,
            max_seqlen_k=max_seqlen_k,
            num_splits=num_splits,
            check_offsets=ctx.config.check_offsets,
        )
        geometry = resolve_geometry(max_seqlen_q, max_seqlen_k, shape.head_dim, ctx.device_props)
        LOGGER.debug("fwd geometry %s for %s", geometry, shape)
        scale = _softmax_scale(softmax_scale, shape.head_dim)
        is_dropout = p_dropout > 0.0

        with ctx.device_guard(q.device):
            buffers = plan_forward_buffers(
                ctx.allocator, geometry, out,
                batch_size=shape.batch_size,
                total_q=shape.total_q,
                num_heads=shape.num_heads,
                head_dim=shape.head_dim,
                return_softmax=return_softmax,
                zero_tensors=zero_tensors,
            )
            params = set_params_fprop(
                ForwardParams(),
                b=shape.batch_size,
                seqlen_q=geometry.max_seqlen_q,
                seqlen_k=geometry.max_seqlen_k,
                h=shape.num_heads,
                d=shape.head_dim,
                q=q, k=k, v=v, out=out,
                cu_seqlens_q=cu_seqlens_q,
                cu_seqlens_k=cu_seqlens_k,
                o_tmp=buffers.o_tmp,
                s=buffers.softmax,
                softmax_lse=buffers.softmax_lse,
                p_dropout=p_dropout,
                softmax_scale=scale,
                is_causal=is_causal,
                num_splits=num_splits,
            )
            launch = LaunchParams(
                params=params,
                stream=ctx.stream(q.device),
                device_props=ctx.device_props,
                is_dropout=is_dropout,
                return_softmax=return_softmax,
                tensors=_tensors(
                    q=q, k=k, v=v, o=out, o_tmp=buffers.o_tmp,
                    cu_seqlens_q=cu_seqlens_q, cu_seqlens_k=cu_seqlens_k,
                    s=buffers.softmax, softmax_lse=buffers.softmax_lse,
                ),
            )
            if is_dropout:
                _attach_philox(params, gen, counter_offset(params.b, params.h))

            kernel = select_kernel(ctx.backend, shape.head_dim, variant_for(is_causal), "fwd")
            _log_launch(ctx, kernel, params)
            kernel(launch)

    return ForwardResult(out=out, softmax_lse=buffers.softmax_lse, softmax=buffers.softmax)


def mha_bwd(
    dout: torch.Tensor,
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    out: torch.Tensor,
    softmax_lse: torch.Tensor,
    dq: torch.Tensor,
    dk: torch.Tensor,
    dv: torch.Tensor,
    cu_seqlens_q: torch.Tensor,
    cu_seqlens_k: torch.Tensor,
    max_seqlen_q: int,
    max_seqlen_k: int,
    *,
    p_dropout: float = 0.0,
    softmax_scale: Optional[float] = None,
    zero_tensors: bool = False,
    is_causal: bool = False,
    num_splits: int = 1,
    generator: Optional[PhiloxGenerator] = None,
    context: Optional[FmhaContext] = None,
) -> BackwardResult:
    """
    Dense / causal backward. dq, dk, dv are written in place.

    Geometry is re-derived with the backward tile rules, so softmax_lse from the
    forward is re-sliced to this call's padded query length.
    """
    ctx = _resolve_context(context, q)
    gen = generator if generator is not None else ctx.generator
    with profile_dispatch("bwd", ctx.config.profile):
        shape = validate_backward(
            dout, q, k, v, out, softmax_lse, dq, dk, dv, cu_seqlens_q, cu_seqlens_k,
            props=ctx.device_props,
            device_type=ctx.device_type,
            p_dropout=p_dropout,
            max_seqlen_q=max_seqlen_q,
            max_seqlen_k=max_seqlen_k,
            num_splits=num_splits,
            check_offsets=ctx.config.check_offsets,
        )
        geometry = resolve_geometry(max_seqlen_q, max_seqlen_k, shape.head_dim, ctx.device_props, backward=True)
        check_softmax_lse(softmax_lse, shape, geometry)
        LOGGER.debug("bwd geometry %s for %s", geometry, shape)
        scale = _softmax_scale(softmax_scale, shape.head_dim)
        is_dropout = p_dropout > 0.0

        with ctx.device_guard(q.device):
            buffers = plan_backward_buffers(
                ctx.allocator, geometry, softmax_lse,
                dq=dq, dk=dk, dv=dv,
                batch_size=shape.batch_size,
                total_q=shape.total_q,
                num_heads=shape.num_heads,
                head_dim=shape.head_dim,
                zero_tensors=zero_tensors,
            )
            params = set_params_dgrad(
                BackwardParams(),
                b=shape.batch_size,
                seqlen_q=geometry.max_seqlen_q,
                seqlen_k=geometry.max_seqlen_k,
                h=shape.num_heads,
                d=shape.head_dim,
                q=q, k=k, v=v, out=out,
                dq=dq, dk=dk, dv=dv,
                cu_seqlens_q=cu_seqlens_q,
                cu_seqlens_k=cu_seqlens_k,
                dq_tmp=buffers.dq_tmp,
                dout=dout,
                softmax_lse=buffers.softmax_lse,
                dsoftmax_sum=buffers.softmax_d,
                p_dropout=p_dropout,
                softmax_scale=scale,
                is_causal=is_causal,
                num_splits=num_splits,
            )
            launch = LaunchParams(
                params=params,
                stream=ctx.stream(q.device),
                device_props=ctx.device_props,
                is_dropout=is_dropout,
                tensors=_tensors(
                    q=q, k=k, v=v, o=out, do=dout, dq=dq, dk=dk, dv=dv, dq_tmp=buffers.dq_tmp,
                    cu_seqlens_q=cu_seqlens_q, cu_seqlens_k=cu_seqlens_k,
                    softmax_lse=buffers.softmax_lse, dsoftmax_sum=buffers.softmax_d,
                ),
            )
            kernel = select_kernel(ctx.backend, shape.head_dim, variant_for(is_causal), "bwd")
            kernel(launch, configure=True)

            if params.num_splits > 1:
                dq_tmp = ensure_split_scratch(
                    ctx.allocator, buffers,
                    total_q=shape.total_q,
                    num_heads=shape.num_heads,
                    head_dim=shape.head_dim,
                    device=q.device,
                )
                params.dq_tmp_ptr = dq_tmp.data_ptr()
                launch.tensors["dq_tmp"] = dq_tmp

            if is_dropout:
                _attach_philox(params, gen, counter_offset(params.b, params.h))

            _log_launch(ctx, kernel, params)
            kernel(launch)

            if params.num_splits > 1:
                dq.copy_(buffers.dq_tmp)

    return BackwardResult(dq=dq, dk=dk, dv=dv, softmax_d=buffers.softmax_d)


def mha_fwd_block(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    cu_seqlens_q: torch.Tensor,
    cu_seqlens_k: torch.Tensor,
    blockmask: torch.Tensor,
    max_seqlen_q: int,
    max_seqlen_k: int,
    *,
    p_dropout: float = 0.0,
    softmax_scale: Optional[float] = None,
    is_causal: bool = False,
    return_softmax: bool = False,
    generator: Optional[PhiloxGenerator] = None,
    context: Optional[FmhaContext] = None,
) -> ForwardResult:
    """
    Block-sparse forward. `blockmask` is int32 of shape
    (padded_k / 256, padded_q / 16); a nonzero entry selects a tile pair.
    The output is allocated here (zeroed) and returned.
    """
    ctx = _resolve_context(context, q)
    gen = generator if generator is not None else ctx.generator
    with profile_dispatch("fwd_block", ctx.config.profile):
        shape = validate_block_forward(
            q, k, v, cu_seqlens_q, cu_seqlens_k, blockmask,
            props=ctx.device_props,
            device_type=ctx.device_type,
            p_dropout=p_dropout,
            max_seqlen_q=max_seqlen_q,
            max_seqlen_k=max_seqlen_k,
            check_offsets=ctx.config.check_offsets,
        )
        geometry = resolve_block_geometry(max_seqlen_q, max_seqlen_k)
        check_blockmask(blockmask, geometry)
        LOGGER.debug("fwd_block geometry %s for %s", geometry, shape)
        scale = _softmax_scale(softmax_scale, shape.head_dim)
        is_dropout = p_dropout > 0.0

        with ctx.device_guard(q.device):
            buffers = plan_block_forward_buffers(
                ctx.allocator, geometry, q,
                batch_size=shape.batch_size,
                total_q=shape.total_q,
                num_heads=shape.num_heads,
                head_dim=shape.head_dim,
                return_softmax=return_softmax,
            )
            params = set_params_fprop(
                ForwardParams(),
                b=shape.batch_size,
                seqlen_q=geometry.max_seqlen_q,
                seqlen_k=geometry.max_seqlen_k,
                h=shape.num_heads,
                d=shape.head_dim,
                q=q, k=k, v=v, out=buffers.out,
                cu_seqlens_q=cu_seqlens_q,
                cu_seqlens_k=cu_seqlens_k,
                o_tmp=buffers.o_tmp,
                s=buffers.softmax,
                softmax_lse=buffers.softmax_lse,
                p_dropout=p_dropout,
                softmax_scale=scale,
                is_causal=is_causal,
                num_splits=1,
            )
            params.blockmask_ptr = blockmask.data_ptr()
            launch = LaunchParams(
                params=params,
                stream=ctx.stream(q.device),
                device_props=ctx.device_props,
                is_dropout=is_dropout,
                return_softmax=return_softmax,
                tensors=_tensors(
                    q=q, k=k, v=v, o=buffers.out, o_tmp=buffers.o_tmp,
                    cu_seqlens_q=cu_seqlens_q, cu_seqlens_k=cu_seqlens_k,
                    s=buffers.softmax, softmax_lse=buffers.softmax_lse, blockmask=blockmask,
                ),
            )
            kernel = select_kernel(ctx.backend, shape.head_dim, "block_sparse", "fwd")
            kernel(launch, configure=True)

            if is_dropout:
                increment = launch.elts_per_thread
                if increment is None:
                    increment = counter_offset(params.b, params.h)
                _attach_philox(params, gen, increment)

            _log_launch(ctx, kernel, params)
            kernel(launch)

    return ForwardResult(out=buffers.out, softmax_lse=buffers.softmax_lse, softmax=buffers.softmax)


def mha_bwd_block(
    dout: torch.Tensor,
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    out: torch.Tensor,
    softmax_lse: torch.Tensor,
    dq: torch.Tensor,
    dk: torch.Tensor,
    dv: torch.Tensor,
    cu_seqlens_q: torch.Tensor,
    cu_seqlens_k: torch.Tensor,
    blockmask: torch.Tensor,
    max_seqlen_q: int,
    max_seqlen_k: int,
    *,
    p_dropout: float = 0.0,
    softmax_scale: Optional[float] = None,
    is_causal: bool = False,
    generator: Optional[PhiloxGenerator] = None,
    context: Optional[FmhaContext] = None,
) -> BackwardResult:
    """
    Block-sparse backward.

    The generator is advanced by a fixed 4: callers replaying the forward mask
    restore the generator state around this call anyway.
    """
    ctx = _resolve_context(context, q)
    gen = generator if generator is not None else ctx.generator
    with profile_dispatch("bwd_block", ctx.config.profile):
        shape = validate_backward(
            dout, q, k, v, out, softmax_lse, dq, dk, dv, cu_seqlens_q, cu_seqlens_k,
            props=ctx.device_props,
            device_type=ctx.device_type,
            p_dropout=p_dropout,
            max_seqlen_q=max_seqlen_q,
            max_seqlen_k=max_seqlen_k,
            num_splits=1,
            block_sparse=True,
            blockmask=blockmask,
            check_offsets=ctx.config.check_offsets,
        )
        geometry = resolve_block_geometry(max_seqlen_q, max_seqlen_k)
        check_blockmask(blockmask, geometry)
        check_softmax_lse(softmax_lse, shape, geometry)
        LOGGER.debug("bwd_block geometry %s for %s", geometry, shape)
        scale = _softmax_scale(softmax_scale, shape.head_dim)
        is_dropout = p_dropout > 0.0

        with ctx.device_guard(q.device):
            buffers = plan_backward_buffers(
                ctx.allocator, geometry, softmax_lse,
                dq=dq, dk=dk, dv=dv,
                batch_size=shape.batch_size,
                total_q=shape.total_q,
                num_heads=shape.num_heads,
                head_dim=shape.head_dim,
                zero_tensors=False,
            )
            params = set_params_dgrad(
                BackwardParams(),
                b=shape.batch_size,
                seqlen_q=geometry.max_seqlen_q,
                seqlen_k=geometry.max_seqlen_k,
                h=shape.num_heads,
                d=shape.head_dim,
                q=q, k=k, v=v, out=out,
                dq=dq, dk=dk, dv=dv,
                cu_seqlens_q=cu_seqlens_q,
                cu_seqlens_k=cu_seqlens_k,
                dq_tmp=buffers.dq_tmp,
                dout=dout,
                softmax_lse=buffers.softmax_lse,
                dsoftmax_sum=buffers.softmax_d,
                p_dropout=p_dropout,
                softmax_scale=scale,
                is_causal=is_causal,
                num_splits=1,
            )
            params.blockmask_ptr = blockmask.data_ptr()
            launch = LaunchParams(
                params=params,
                stream=ctx.stream(q.device),
                device_props=ctx.device_props,
                is_dropout=is_dropout,
                tensors=_tensors(
                    q=q, k=k, v=v, o=out, do=dout, dq=dq, dk=dk, dv=dv, dq_tmp=buffers.dq_tmp,
                    cu_seqlens_q=cu_seqlens_q, cu_seqlens_k=cu_seqlens_k,
                    softmax_lse=buffers.softmax_lse, dsoftmax_sum=buffers.softmax_d, blockmask=blockmask,
                ),
            )
            if is_dropout:
                _attach_philox(params, gen, BLOCK_BWD_COUNTER_OFFSET)

            kernel = select_kernel(ctx.backend, shape.head_dim, "block_sparse", "bwd")
            _log_launch(ctx, kernel, params)
            kernel(launch)

    return BackwardResult(dq=dq, dk=dk, dv=dv, softmax_d=buffers.softmax_d)


__all__ = [
    "BackwardResult",
    "ForwardResult",
    "mha_bwd",
    "mha_bwd_block",
    "mha_fwd",
    "mha_fwd_block",
]
