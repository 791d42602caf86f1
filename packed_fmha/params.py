"""
Execution parameter records handed to the fused attention kernels.

ForwardParams / BackwardParams are flat value records: device pointers (0 means
null), element strides, problem sizes and the precomputed scale / dropout
constants. They are built fresh for every call and only borrow the tensors
whose pointers they hold.

Backward is a superset of forward. Its query-gradient scratch lives in its own
`dq_tmp_ptr` field; `o_tmp_ptr` is never reused for it.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional, Tuple

import torch

from packed_fmha.errors import InvalidArgument
from packed_fmha.rng import PhiloxState


_UINT32_MAX = 4294967295.0
_UINT16_MAX = 65535.0


def _ptr(t: Optional[torch.Tensor]) -> int:
    return t.data_ptr() if t is not None else 0


def quantize_keep_prob(keep_prob: float) -> Tuple[int, int]:
    """
    Integer thresholds for keep_prob so the kernel can compare sampled integers
    directly. Rounded down because the kernel keeps an element when `rand <= threshold`.
    """
    return (
        int(math.floor(keep_prob * _UINT32_MAX)),
        int(math.floor(keep_prob * _UINT16_MAX)),
    )


def pack_alpha(value: float, dtype: torch.dtype) -> int:
    """
    Encode a scale in the kernel's math type as a 32-bit word.

    Half types are rounded once and the 16-bit pattern is duplicated into both
    halves (a packed pair), and fp32 keeps its raw bits.
    """
    if dtype in (torch.float16, torch.bfloat16):
        bits = torch.tensor([value], dtype=dtype).view(torch.int16).item() & 0xFFFF
        return (bits << 16) | bits
    if dtype == torch.float32:
        return torch.tensor([value], dtype=torch.float32).view(torch.int32).item() & 0xFFFFFFFF
    raise InvalidArgument(f"pack_alpha does not support dtype {dtype}")


@dataclass
class ForwardParams:
    is_bf16: bool = False

    # Pointers and strides (in elements).
    q_ptr: int = 0
    k_ptr: int = 0
    v_ptr: int = 0
    q_row_stride_in_elts: int = 0
    k_row_stride_in_elts: int = 0
    v_row_stride_in_elts: int = 0
    q_head_stride_in_elts: int = 0
    k_head_stride_in_elts: int = 0
    v_head_stride_in_elts: int = 0
    o_ptr: int = 0
    o_row_stride_in_elts: int = 0
    o_head_stride_in_elts: int = 0
    o_tmp_ptr: int = 0
    o_tmp_row_stride_in_elts: int = 0
    o_tmp_head_stride_in_elts: int = 0

    cu_seqlens_q_ptr: int = 0
    cu_seqlens_k_ptr: int = 0

    # Raw softmax dump.
    s_ptr: int = 0
    s_stride_in_bytes: int = 0

    softmax_lse_ptr: int = 0
    blockmask_ptr: int = 0

    # Dimensions.
    b: int = 0
    h: int = 0
    seqlen_q: int = 0
    seqlen_k: int = 0
    d: int = 0

    # Scales.
    scale_bmm1f: float = 0.0
    scale_bmm1: int = 0

    # Dropout, stored as keep probability.
    p_dropout: float = 0.0
    p_dropout_in_uint: int = 0
    p_dropout_in_uint16_t: int = 0
    rp_dropout: float = 0.0
    scale_bmm1_rp_dropout: float = 0.0
    scale_dropout: int = 0

    is_causal: bool = False
    num_splits: int = 0

    philox_args: Optional[PhiloxState] = None

    def reset(self) -> None:
        for f in fields(self):
            setattr(self, f.name, f.default)


@dataclass
class BackwardParams(ForwardParams):
    dq_ptr: int = 0
    dk_ptr: int = 0
    dv_ptr: int = 0
    dq_row_stride_in_elts: int = 0
    dk_row_stride_in_elts: int = 0
    dv_row_stride_in_elts: int = 0
    dq_head_stride_in_elts: int = 0
    dk_head_stride_in_elts: int = 0
    dv_head_stride_in_elts: int = 0
    do_ptr: int = 0
    dq_tmp_ptr: int = 0
    dsoftmax_sum_ptr: int = 0


@dataclass
class LaunchParams:
    """Everything a kernel needs besides the record itself."""

    params: ForwardParams
    stream: Any = None
    device_props: Any = None
    is_dropout: bool = False
    return_softmax: bool = False
    # Random draws per thread reported by a configure phase; None if not reported.
    elts_per_thread: Optional[int] = None
    # Borrowed handles for the pointers in `params`, keyed by field stem.
    tensors: Dict[str, torch.Tensor] = field(default_factory=dict)


def set_params_fprop(
    params: ForwardParams,
    *,
    b: int,
    seqlen_q: int,
    seqlen_k: int,
    h: int,
    d: int,
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    out: torch.Tensor,
    cu_seqlens_q: torch.Tensor,
    cu_seqlens_k: torch.Tensor,
    o_tmp: Optional[torch.Tensor],
    s: Optional[torch.Tensor],
    softmax_lse: torch.Tensor,
    p_dropout: float,
    softmax_scale: float,
    is_causal: bool,
    num_splits: int,
) -> ForwardParams:
    if not 0.0 <= p_dropout < 1.0:
        raise InvalidArgument(f"p_dropout must be in [0, 1), got {p_dropout}")

    params.reset()

    params.is_bf16 = q.dtype == torch.bfloat16
    data_type = torch.bfloat16 if params.is_bf16 else torch.float16

    params.q_ptr = _ptr(q)
    params.k_ptr = _ptr(k)
    params.v_ptr = _ptr(v)
    params.q_row_stride_in_elts = q.stride(0)
    params.k_row_stride_in_elts = k.stride(0)
    params.v_row_stride_in_elts = v.stride(0)
    params.q_head_stride_in_elts = q.stride(1)
    params.k_head_stride_in_elts = k.stride(1)
    params.v_head_stride_in_elts = v.stride(1)
    params.o_ptr = _ptr(out)
    params.o_row_stride_in_elts = out.stride(0)
    params.o_head_stride_in_elts = out.stride(1)
    params.o_tmp_ptr = _ptr(o_tmp)
    params.o_tmp_row_stride_in_elts = h * d
    params.o_tmp_head_stride_in_elts = d

    params.cu_seqlens_q_ptr = _ptr(cu_seqlens_q)
    params.cu_seqlens_k_ptr = _ptr(cu_seqlens_k)

    params.s_ptr = _ptr(s)
    params.s_stride_in_bytes = b * h * seqlen_k * (torch.finfo(data_type).bits // 8)

    params.softmax_lse_ptr = _ptr(softmax_lse)

    params.b = b
    params.h = h
    params.seqlen_q = seqlen_q
    params.seqlen_k = seqlen_k
    params.d = d

    params.scale_bmm1f = softmax_scale
    params.scale_bmm1 = pack_alpha(softmax_scale, data_type)

    params.p_dropout = 1.0 - p_dropout
    params.p_dropout_in_uint, params.p_dropout_in_uint16_t = quantize_keep_prob(params.p_dropout)
    params.rp_dropout = 1.0 / params.p_dropout
    params.scale_bmm1_rp_dropout = params.rp_dropout * params.scale_bmm1f
    params.scale_dropout = pack_alpha(params.rp_dropout, data_type)

    params.is_causal = is_causal
    params.num_splits = num_splits
    return params


def set_params_dgrad(
    params: BackwardParams,
    *,
    b: int,
    seqlen_q: int,
    seqlen_k: int,
    h: int,
    d: int,
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    out: torch.Tensor,
    dq: torch.Tensor,
    dk: torch.Tensor,
    dv: torch.Tensor,
    cu_seqlens_q: torch.Tensor,
    cu_seqlens_k: torch.Tensor,
    dq_tmp: Optional[torch.Tensor],
    dout: torch.Tensor,
    softmax_lse: torch.Tensor,
    dsoftmax_sum: torch.Tensor,
    p_dropout: float,
    softmax_scale: float,
    is_causal: bool,
    num_splits: int,
) -> BackwardParams:
    set_params_fprop(
        params,
        b=b, seqlen_q=seqlen_q, seqlen_k=seqlen_k, h=h, d=d,
        q=q, k=k, v=v, out=out,
        cu_seqlens_q=cu_seqlens_q,
        cu_seqlens_k=cu_seqlens_k,
        o_tmp=None,
        s=None,
        softmax_lse=softmax_lse,
        p_dropout=p_dropout,
        softmax_scale=softmax_scale,
        is_causal=is_causal,
        num_splits=num_splits,
    )

    params.dq_ptr = _ptr(dq)
    params.dk_ptr = _ptr(dk)
    params.dv_ptr = _ptr(dv)
    params.dq_row_stride_in_elts = dq.stride(0)
    params.dk_row_stride_in_elts = dk.stride(0)
    params.dv_row_stride_in_elts = dv.stride(0)
    params.dq_head_stride_in_elts = dq.stride(1)
    params.dk_head_stride_in_elts = dk.stride(1)
    params.dv_head_stride_in_elts = dv.stride(1)
    params.do_ptr = _ptr(dout)
    params.dq_tmp_ptr = _ptr(dq_tmp)

    params.dsoftmax_sum_ptr = _ptr(dsoftmax_sum)
    return params


def describe_params(params: ForwardParams) -> Dict[str, Any]:
    """Plain-dict view of a record, for logging."""
    return asdict(params)


__all__ = [
    "BackwardParams",
    "ForwardParams",
    "LaunchParams",
    "describe_params",
    "pack_alpha",
    "quantize_keep_prob",
    "set_params_dgrad",
    "set_params_fprop",
]
