"""
Input contracts for the packed FMHA entry points.

Everything here only inspects tensor metadata (and, when enabled, offset
values). A failed check raises before any buffer is allocated or any output is
touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import torch

from packed_fmha.device import DeviceProperties
from packed_fmha.errors import ConfigurationConflict, InvalidArgument, UnsupportedConfiguration
from packed_fmha.geometry import BatchGeometry


Named = Iterable[Tuple[str, Optional[torch.Tensor]]]

BLOCK_SPARSE_HEAD_DIMS = (16, 32, 64, 128)


@dataclass(frozen=True)
class PackedShape:
    batch_size: int
    total_q: int
    total_k: int
    num_heads: int
    head_dim: int


def check_device_generation(props: DeviceProperties, *, block_sparse: bool = False) -> None:
    if block_sparse:
        if not (props.is_sm8x or props.is_sm90):
            raise UnsupportedConfiguration(f"block-sparse attention requires sm8x or sm90, got {props}")
    elif not (props.is_sm90 or props.is_sm8x or props.is_sm75):
        raise UnsupportedConfiguration(f"fused attention requires sm75, sm8x or sm90, got {props}")


def check_dtypes(named: Named, props: DeviceProperties, *, block_sparse: bool = False) -> torch.dtype:
    named = [(n, t) for n, t in named if t is not None]
    ref_name, ref = named[0]
    dtype = ref.dtype
    if block_sparse:
        if dtype != torch.float16:
            raise InvalidArgument(f"block-sparse attention requires float16 inputs, {ref_name} is {dtype}")
    elif dtype == torch.bfloat16:
        if not props.supports_bf16:
            raise UnsupportedConfiguration(f"bfloat16 requires sm8x or sm90, got {props}")
    elif dtype != torch.float16:
        raise InvalidArgument(f"{ref_name} must be float16 or bfloat16, got {dtype}")
    for name, t in named[1:]:
        if t.dtype != dtype:
            raise InvalidArgument(f"{name} must have dtype {dtype} (same as {ref_name}), got {t.dtype}")
    return dtype


def check_int32(named: Named) -> None:
    for name, t in named:
        if t.dtype != torch.int32:
            raise InvalidArgument(f"{name} must have dtype torch.int32, got {t.dtype}")


def check_residency(named: Named, device_type: str) -> None:
    for name, t in named:
        if t.device.type != device_type:
            raise InvalidArgument(f"{name} must be on a {device_type} device, got {t.device}")


def check_rank(named: Named, ndim: int = 3) -> None:
    for name, t in named:
        if t.ndim != ndim:
            raise InvalidArgument(f"{name} must be {ndim}-D (total, num_heads, head_dim), got {t.ndim}-D")


def check_inner_stride(named: Named) -> None:
    for name, t in named:
        if t.stride(-1) != 1:
            raise InvalidArgument(f"{name} must have stride 1 on its last dimension, got strides {t.stride()}")


def check_contiguous(named: Named) -> None:
    for name, t in named:
        if not t.is_contiguous():
            raise InvalidArgument(f"{name} must be contiguous")


def check_shape(name: str, t: torch.Tensor, *expected: int) -> None:
    if tuple(t.shape) != tuple(expected):
        raise InvalidArgument(f"{name} must have shape {tuple(expected)}, got {tuple(t.shape)}")


def check_head_dim(head_dim: int, *, block_sparse: bool = False) -> None:
    if block_sparse:
        if head_dim not in BLOCK_SPARSE_HEAD_DIMS:
            raise InvalidArgument(f"block-sparse head_dim must be one of {BLOCK_SPARSE_HEAD_DIMS}, got {head_dim}")
    elif head_dim % 8 != 0 or head_dim > 128:
        raise InvalidArgument(f"head_dim must be a multiple of 8 and <= 128, got {head_dim}")


def check_backward_head_dim(head_dim: int, props: DeviceProperties, *, block_sparse: bool = False) -> None:
    # TODO: lift once sm86 / sm75 backward kernels for d=128 exist.
    wide = head_dim == 128 if block_sparse else head_dim > 64
    if wide and not (props.is_sm80 or props.is_sm90):
        raise UnsupportedConfiguration(f"backward with head_dim={head_dim} requires sm80 or sm90, got {props}")


def check_dropout(p_dropout: float) -> None:
    if not 0.0 <= p_dropout < 1.0:
        raise InvalidArgument(f"p_dropout must be in [0, 1), got {p_dropout}")


def check_scalars(max_seqlen_q: int, max_seqlen_k: int, num_splits: int = 1) -> None:
    if max_seqlen_q < 0 or max_seqlen_k < 0:
        raise InvalidArgument(f"max_seqlen_q/max_seqlen_k must be non-negative, got {max_seqlen_q}, {max_seqlen_k}")
    if num_splits < 0:
        raise InvalidArgument(f"num_splits must be non-negative, got {num_splits}")


def check_offsets_values(name: str, cu_seqlens: torch.Tensor, total: int) -> None:
    """Value-level offset invariants. Copies the offsets to the host."""
    offsets = cu_seqlens.tolist()
    if offsets[0] != 0:
        raise InvalidArgument(f"{name}[0] must be 0, got {offsets[0]}")
    for i in range(len(offsets) - 1):
        if offsets[i + 1] < offsets[i]:
            raise InvalidArgument(f"{name} must be non-decreasing, {name}[{i + 1}]={offsets[i + 1]} < {offsets[i]}")
    if offsets[-1] != total:
        raise InvalidArgument(f"{name}[-1] must equal the packed row count {total}, got {offsets[-1]}")


def check_softmax_lse(softmax_lse: torch.Tensor, shape: PackedShape, geometry: BatchGeometry) -> None:
    if softmax_lse.dtype != torch.float32:
        raise InvalidArgument(f"softmax_lse must have dtype torch.float32, got {softmax_lse.dtype}")
    if softmax_lse.ndim != 3 or tuple(softmax_lse.shape[:2]) != (shape.batch_size, shape.num_heads):
        raise InvalidArgument(
            f"softmax_lse must have shape ({shape.batch_size}, {shape.num_heads}, seqlen), "
            f"got {tuple(softmax_lse.shape)}"
        )
    if softmax_lse.shape[2] < geometry.max_seqlen_q:
        raise ConfigurationConflict(
            f"softmax_lse covers {softmax_lse.shape[2]} query rows but the padded query length is "
            f"{geometry.max_seqlen_q}"
        )


def check_blockmask(blockmask: torch.Tensor, geometry: BatchGeometry) -> None:
    if tuple(blockmask.shape) != geometry.blockmask_shape:
        raise ConfigurationConflict(
            f"blockmask must have shape {geometry.blockmask_shape} "
            f"(max_seqlen_k / 256, max_seqlen_q / 16), got {tuple(blockmask.shape)}"
        )


def _packed_shape(q: torch.Tensor, k: torch.Tensor, cu_seqlens_q: torch.Tensor) -> PackedShape:
    if cu_seqlens_q.ndim != 1:
        raise InvalidArgument(f"cu_seqlens_q must be 1-D, got {cu_seqlens_q.ndim}-D")
    total_q, num_heads, head_dim = q.shape
    return PackedShape(
        batch_size=cu_seqlens_q.numel() - 1,
        total_q=total_q,
        total_k=k.shape[0],
        num_heads=num_heads,
        head_dim=head_dim,
    )


def _check_packed(
    shape: PackedShape,
    query_side: Named,
    key_side: Named,
    cu_seqlens_q: torch.Tensor,
    cu_seqlens_k: torch.Tensor,
    *,
    block_sparse: bool,
    check_offsets: bool,
) -> None:
    if shape.batch_size <= 0:
        raise InvalidArgument(f"batch_size must be positive, got {shape.batch_size}")
    check_head_dim(shape.head_dim, block_sparse=block_sparse)
    for name, t in query_side:
        check_shape(name, t, shape.total_q, shape.num_heads, shape.head_dim)
    for name, t in key_side:
        check_shape(name, t, shape.total_k, shape.num_heads, shape.head_dim)
    check_shape("cu_seqlens_q", cu_seqlens_q, shape.batch_size + 1)
    check_shape("cu_seqlens_k", cu_seqlens_k, shape.batch_size + 1)
    if check_offsets:
        check_offsets_values("cu_seqlens_q", cu_seqlens_q, shape.total_q)
        check_offsets_values("cu_seqlens_k", cu_seqlens_k, shape.total_k)


def validate_forward(
    q, k, v, out, cu_seqlens_q, cu_seqlens_k,
    *,
    props: DeviceProperties,
    device_type: str,
    p_dropout: float,
    max_seqlen_q: int,
    max_seqlen_k: int,
    num_splits: int,
    check_offsets: bool = False,
) -> PackedShape:
    check_device_generation(props)
    features = (("q", q), ("k", k), ("v", v), ("out", out))
    offsets = (("cu_seqlens_q", cu_seqlens_q), ("cu_seqlens_k", cu_seqlens_k))
    check_dtypes(features, props)
    check_int32(offsets)
    check_residency(features + offsets, device_type)
    check_rank(features)
    check_inner_stride(features)
    check_contiguous(offsets)
    check_dropout(p_dropout)
    check_scalars(max_seqlen_q, max_seqlen_k, num_splits)

    shape = _packed_shape(q, k, cu_seqlens_q)
    _check_packed(
        shape,
        (("q", q), ("out", out)),
        (("k", k), ("v", v)),
        cu_seqlens_q,
        cu_seqlens_k,
        block_sparse=False,
        check_offsets=check_offsets,
    )
    return shape


def validate_backward(
    dout, q, k, v, out, softmax_lse, dq, dk, dv, cu_seqlens_q, cu_seqlens_k,
    *,
    props: DeviceProperties,
    device_type: str,
    p_dropout: float,
    max_seqlen_q: int,
    max_seqlen_k: int,
    num_splits: int,
    block_sparse: bool = False,
    blockmask: Optional[torch.Tensor] = None,
    check_offsets: bool = False,
) -> PackedShape:
    check_device_generation(props, block_sparse=block_sparse)
    features = (("q", q), ("k", k), ("v", v), ("out", out), ("dout", dout), ("dq", dq), ("dk", dk), ("dv", dv))
    offsets = (("cu_seqlens_q", cu_seqlens_q), ("cu_seqlens_k", cu_seqlens_k))
    if block_sparse:
        offsets = offsets + (("blockmask", blockmask),)
    check_dtypes(features, props, block_sparse=block_sparse)
    check_int32(offsets)
    check_residency(features + offsets + (("softmax_lse", softmax_lse),), device_type)
    check_rank(features)
    check_inner_stride((("q", q), ("k", k), ("v", v), ("dq", dq), ("dk", dk), ("dv", dv)))
    check_contiguous((("out", out), ("dout", dout)) + offsets)
    check_dropout(p_dropout)
    check_scalars(max_seqlen_q, max_seqlen_k, num_splits)

    shape = _packed_shape(q, k, cu_seqlens_q)
    _check_packed(
        shape,
        (("q", q), ("out", out), ("dout", dout), ("dq", dq)),
        (("k", k), ("v", v), ("dk", dk), ("dv", dv)),
        cu_seqlens_q,
        cu_seqlens_k,
        block_sparse=block_sparse,
        check_offsets=check_offsets,
    )
    check_backward_head_dim(shape.head_dim, props, block_sparse=block_sparse)
    return shape


def validate_block_forward(
    q, k, v, cu_seqlens_q, cu_seqlens_k, blockmask,
    *,
    props: DeviceProperties,
    device_type: str,
    p_dropout: float,
    max_seqlen_q: int,
    max_seqlen_k: int,
    check_offsets: bool = False,
) -> PackedShape:
    check_device_generation(props, block_sparse=True)
    features = (("q", q), ("k", k), ("v", v))
    offsets = (("cu_seqlens_q", cu_seqlens_q), ("cu_seqlens_k", cu_seqlens_k), ("blockmask", blockmask))
    check_dtypes(features, props, block_sparse=True)
    check_int32(offsets)
    check_residency(features + offsets, device_type)
    check_rank(features)
    check_inner_stride(features)
    check_contiguous(offsets)
    check_dropout(p_dropout)
    check_scalars(max_seqlen_q, max_seqlen_k)

    shape = _packed_shape(q, k, cu_seqlens_q)
    _check_packed(
        shape,
        (("q", q),),
        (("k", k), ("v", v)),
        cu_seqlens_q,
        cu_seqlens_k,
        block_sparse=True,
        check_offsets=check_offsets,
    )
    return shape


__all__ = [
    "PackedShape",
    "check_blockmask",
    "check_softmax_lse",
    "validate_backward",
    "validate_block_forward",
    "validate_forward",
]
