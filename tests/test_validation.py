import pytest
import torch

from packed_fmha import (
    ConfigurationConflict,
    InvalidArgument,
    UnsupportedConfiguration,
    mha_bwd,
    mha_bwd_block,
    mha_fwd,
    mha_fwd_block,
)

from _packed import CountingAllocator, RecordingBackend, cpu_context, make_packed


def _guarded_context(**kwargs):
    allocator = CountingAllocator()
    backend = RecordingBackend()
    return cpu_context(backend=backend, allocator=allocator, **kwargs), allocator, backend


def _assert_untouched(allocator, backend):
    assert allocator.calls == []
    assert backend.launches == []


def _fwd_args(dtype=torch.float16, D=32, seqlens=(5, 9)):
    q, k, v, cu_q, cu_k, max_q, max_k = make_packed(list(seqlens), D=D, dtype=dtype)
    out = torch.empty_like(q)
    return [q, k, v, out, cu_q, cu_k, max_q, max_k]


@pytest.mark.parametrize(
    "mutate",
    [
        pytest.param(lambda a: a.__setitem__(0, a[0].float()), id="float32-q"),
        pytest.param(lambda a: a.__setitem__(2, a[2].to(torch.bfloat16)), id="mixed-dtypes"),
        pytest.param(lambda a: a.__setitem__(4, a[4].long()), id="int64-offsets"),
        pytest.param(lambda a: a.__setitem__(3, a[3][:-1]), id="out-shape"),
        pytest.param(lambda a: a.__setitem__(5, a[5][:-1]), id="offsets-length"),
        pytest.param(
            lambda a: a.__setitem__(0, torch.zeros(a[0].shape[0], a[0].shape[1], 64, dtype=a[0].dtype)[..., ::2]),
            id="inner-stride",
        ),
        pytest.param(lambda a: a.__setitem__(4, torch.tensor([0, 5, 13], dtype=torch.int32)), id="offsets-total"),
        pytest.param(lambda a: a.__setitem__(4, torch.tensor([0, 9, 5], dtype=torch.int32)), id="offsets-decreasing"),
        pytest.param(lambda a: a.__setitem__(6, -1), id="negative-max-seqlen"),
        pytest.param(lambda a: a.__setitem__(2, torch.tensor(1.0, dtype=torch.float16)), id="scalar-v"),
        pytest.param(lambda a: a.__setitem__(3, a[3].flatten(1)), id="2d-out"),
    ],
)
def test_forward_rejects_invalid_arguments(mutate):
    ctx, allocator, backend = _guarded_context()
    args = _fwd_args()
    mutate(args)
    with pytest.raises(InvalidArgument):
        mha_fwd(*args, context=ctx)
    _assert_untouched(allocator, backend)


def test_shape_error_names_expected_shape():
    ctx, _, _ = _guarded_context()
    args = _fwd_args()
    args[3] = args[3][:-1]
    with pytest.raises(InvalidArgument, match=r"out must have shape \(14, 2, 32\)"):
        mha_fwd(*args, context=ctx)


@pytest.mark.parametrize("D", [20, 136])
def test_forward_rejects_head_dim(D):
    ctx, allocator, backend = _guarded_context()
    with pytest.raises(InvalidArgument):
        mha_fwd(*_fwd_args(D=D), context=ctx)
    _assert_untouched(allocator, backend)


def test_forward_rejects_full_dropout():
    ctx, allocator, backend = _guarded_context()
    with pytest.raises(InvalidArgument):
        mha_fwd(*_fwd_args(), p_dropout=1.0, context=ctx)
    _assert_untouched(allocator, backend)


def test_bf16_requires_ampere():
    ctx, allocator, backend = _guarded_context(major=7, minor=5)
    with pytest.raises(UnsupportedConfiguration):
        mha_fwd(*_fwd_args(dtype=torch.bfloat16), context=ctx)
    _assert_untouched(allocator, backend)


def test_old_devices_are_unsupported():
    ctx, allocator, backend = _guarded_context(major=7, minor=0)
    with pytest.raises(UnsupportedConfiguration):
        mha_fwd(*_fwd_args(), context=ctx)
    _assert_untouched(allocator, backend)


def test_offset_values_unchecked_when_disabled():
    ctx, allocator, backend = _guarded_context(check_offsets=False)
    args = _fwd_args()
    args[4] = torch.tensor([0, 5, 13], dtype=torch.int32)
    mha_fwd(*args, context=ctx)
    assert backend.launches == [("dense_fwd", 32, False)]


def test_cpu_tensors_need_an_explicit_context():
    with pytest.raises(InvalidArgument):
        mha_fwd(*_fwd_args())


def test_residency_follows_context_device_type():
    ctx, allocator, backend = _guarded_context()
    ctx.device_type = "cuda"
    with pytest.raises(InvalidArgument, match="must be on a cuda device"):
        mha_fwd(*_fwd_args(), context=ctx)
    _assert_untouched(allocator, backend)


def _bwd_args(D=32, seqlens=(5, 9), lse_len=16, dtype=torch.float16):
    q, k, v, cu_q, cu_k, max_q, max_k = make_packed(list(seqlens), D=D, dtype=dtype)
    out = torch.zeros_like(q)
    dout = torch.zeros_like(q)
    lse = torch.zeros(len(seqlens), q.shape[1], lse_len)
    dq, dk, dv = torch.empty_like(q), torch.empty_like(k), torch.empty_like(v)
    return [dout, q, k, v, out, lse, dq, dk, dv, cu_q, cu_k, max_q, max_k]


def test_backward_wide_head_requires_sm80():
    ctx, allocator, backend = _guarded_context(major=8, minor=6)
    with pytest.raises(UnsupportedConfiguration):
        mha_bwd(*_bwd_args(D=128), context=ctx)
    _assert_untouched(allocator, backend)


def test_backward_short_softmax_lse_conflicts():
    ctx, allocator, backend = _guarded_context()
    args = _bwd_args(seqlens=(5, 20), lse_len=16)
    with pytest.raises(ConfigurationConflict):
        mha_bwd(*args, context=ctx)
    _assert_untouched(allocator, backend)


def test_backward_softmax_lse_dtype():
    ctx, allocator, backend = _guarded_context()
    args = _bwd_args()
    args[5] = args[5].half()
    with pytest.raises(InvalidArgument):
        mha_bwd(*args, context=ctx)
    _assert_untouched(allocator, backend)


@pytest.mark.parametrize("index,name", [(0, "dout"), (6, "dq"), (8, "dv")])
def test_backward_rejects_scalar_features(index, name):
    ctx, allocator, backend = _guarded_context()
    args = _bwd_args()
    args[index] = torch.tensor(0.0, dtype=torch.float16)
    with pytest.raises(InvalidArgument, match=rf"{name} must be 3-D"):
        mha_bwd(*args, context=ctx)
    _assert_untouched(allocator, backend)


def test_block_forward_rejects_scalar_v():
    ctx, allocator, backend = _guarded_context()
    args = _block_args()
    args[2] = torch.tensor(1.0, dtype=torch.float16)
    with pytest.raises(InvalidArgument, match="v must be 3-D"):
        mha_fwd_block(*args, context=ctx)
    _assert_untouched(allocator, backend)


def test_backward_non_contiguous_dout():
    ctx, allocator, backend = _guarded_context()
    args = _bwd_args()
    args[0] = torch.zeros(args[1].shape[0], 32, args[1].shape[1], dtype=torch.float16).transpose(1, 2)
    with pytest.raises(InvalidArgument):
        mha_bwd(*args, context=ctx)
    _assert_untouched(allocator, backend)


def _block_args(seqlens=(20, 12), blockmask_shape=(1, 2), dtype=torch.float16, D=32):
    q, k, v, cu_q, cu_k, max_q, max_k = make_packed(list(seqlens), D=D, dtype=dtype)
    blockmask = torch.ones(blockmask_shape, dtype=torch.int32)
    return [q, k, v, cu_q, cu_k, blockmask, max_q, max_k]


def test_block_forward_mask_shape_conflicts():
    ctx, allocator, backend = _guarded_context()
    with pytest.raises(ConfigurationConflict):
        mha_fwd_block(*_block_args(blockmask_shape=(1, 3)), context=ctx)
    _assert_untouched(allocator, backend)


def test_block_forward_requires_fp16():
    ctx, allocator, backend = _guarded_context()
    with pytest.raises(InvalidArgument):
        mha_fwd_block(*_block_args(dtype=torch.bfloat16), context=ctx)
    _assert_untouched(allocator, backend)


def test_block_forward_requires_ampere():
    ctx, allocator, backend = _guarded_context(major=7, minor=5)
    with pytest.raises(UnsupportedConfiguration):
        mha_fwd_block(*_block_args(), context=ctx)
    _assert_untouched(allocator, backend)


def test_block_forward_head_dim():
    ctx, allocator, backend = _guarded_context()
    with pytest.raises(InvalidArgument):
        mha_fwd_block(*_block_args(D=48), context=ctx)
    _assert_untouched(allocator, backend)


def test_block_backward_mask_dtype():
    ctx, allocator, backend = _guarded_context()
    args = _bwd_args(seqlens=(20, 12), lse_len=32)
    blockmask = torch.ones(1, 2, dtype=torch.int64)
    with pytest.raises(InvalidArgument):
        mha_bwd_block(*args[:11], blockmask, *args[11:], context=ctx)
    _assert_untouched(allocator, backend)


def test_block_backward_mask_shape_conflicts():
    ctx, allocator, backend = _guarded_context()
    args = _bwd_args(seqlens=(20, 12), lse_len=32)
    blockmask = torch.ones(2, 2, dtype=torch.int32)
    with pytest.raises(ConfigurationConflict):
        mha_bwd_block(*args[:11], blockmask, *args[11:], context=ctx)
    _assert_untouched(allocator, backend)


def test_valid_calls_launch_once():
    ctx, allocator, backend = _guarded_context()
    mha_fwd(*_fwd_args(), is_causal=True, context=ctx)
    mha_fwd_block(*_block_args(), context=ctx)
    assert backend.launches == [
        ("causal_fwd", 32, False),
        ("block_fwd", 32, True),
        ("block_fwd", 32, False),
    ]
