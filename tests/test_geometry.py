import pytest
import torch

from packed_fmha import mha_fwd
from packed_fmha.device import DeviceProperties
from packed_fmha.errors import InvalidArgument
from packed_fmha.geometry import key_tile, resolve_block_geometry, resolve_geometry, round_up

from _packed import RecordingBackend, cpu_context, make_packed


SM75 = DeviceProperties(7, 5)
SM80 = DeviceProperties(8, 0)
SM86 = DeviceProperties(8, 6)


def test_round_up():
    assert round_up(0, 16) == 0
    assert round_up(1, 16) == 16
    assert round_up(16, 16) == 16
    assert round_up(17, 16) == 32


@pytest.mark.parametrize(
    "head_dim,props,backward,expected",
    [
        (32, SM80, False, 256),
        (64, SM80, False, 256),
        (72, SM80, False, 128),
        (128, SM86, False, 128),
        (64, SM80, True, 256),
        (64, SM75, False, 256),
        (64, SM75, True, 128),
        (32, SM75, True, 256),
    ],
)
def test_key_tile(head_dim, props, backward, expected):
    assert key_tile(head_dim, props, backward=backward) == expected


@pytest.mark.parametrize(
    "max_k,head_dim,padded_k,loop",
    [
        (0, 64, 128, False),
        (100, 64, 128, False),
        (128, 64, 128, False),
        (129, 64, 256, False),
        (256, 64, 256, False),
        (300, 64, 512, True),
        (100, 128, 128, False),
        (200, 128, 256, True),
        (300, 128, 384, True),
        (600, 128, 640, True),
    ],
)
def test_dense_key_padding(max_k, head_dim, padded_k, loop):
    geometry = resolve_geometry(10, max_k, head_dim, SM80)
    assert geometry.max_seqlen_k == padded_k
    assert geometry.loop is loop
    assert geometry.needs_split_accumulation is loop


def test_query_padding_is_multiple_of_16():
    assert resolve_geometry(0, 64, 64, SM80).max_seqlen_q == 0
    assert resolve_geometry(1, 64, 64, SM80).max_seqlen_q == 16
    assert resolve_geometry(17, 64, 64, SM80).max_seqlen_q == 32
    assert resolve_geometry(48, 64, 64, SM80).max_seqlen_q == 48


def test_backward_on_sm75_uses_narrow_tile():
    fwd = resolve_geometry(32, 200, 64, SM75)
    bwd = resolve_geometry(32, 200, 64, SM75, backward=True)
    assert (fwd.tile, fwd.max_seqlen_k, fwd.loop) == (256, 256, False)
    assert (bwd.tile, bwd.max_seqlen_k, bwd.loop) == (128, 256, True)


def test_negative_lengths_rejected():
    with pytest.raises(InvalidArgument):
        resolve_geometry(-1, 64, 64, SM80)
    with pytest.raises(InvalidArgument):
        resolve_block_geometry(16, -5)


def test_block_geometry():
    geometry = resolve_block_geometry(40, 100)
    assert geometry.tile == 256
    assert geometry.max_seqlen_k == 256
    assert geometry.max_seqlen_q == 48
    assert geometry.loop is False
    assert geometry.blockmask_shape == (1, 3)

    wide = resolve_block_geometry(16, 300)
    assert wide.max_seqlen_k == 512
    assert wide.loop is True
    assert wide.blockmask_shape == (2, 1)


def test_block_geometry_minimum_key_length():
    assert resolve_block_geometry(16, 0).max_seqlen_k == 256


def test_wide_head_long_keys():
    geometry = resolve_geometry(16, 600, 128, SM80)
    assert (geometry.tile, geometry.max_seqlen_k, geometry.max_seqlen_q) == (128, 640, 16)
    assert geometry.loop is True


def test_short_batch_snaps_to_smallest_tile():
    geometry = resolve_geometry(8, 8, 64, SM80)
    assert (geometry.max_seqlen_k, geometry.max_seqlen_q, geometry.loop) == (128, 16, False)


def test_short_batch_launch_uses_padded_lengths():
    backend = RecordingBackend()
    ctx = cpu_context(backend=backend)
    q, k, v, cu_q, cu_k, max_q, max_k = make_packed([3, 5], D=64)
    assert cu_q.tolist() == [0, 3, 8]
    assert (max_q, max_k) == (5, 5)

    result = mha_fwd(q, k, v, torch.empty_like(q), cu_q, cu_k, 8, 8, context=ctx)

    launch = backend.last_launch
    assert (launch.params.seqlen_k, launch.params.seqlen_q) == (128, 16)
    assert "o_tmp" not in launch.tensors
    assert result.softmax_lse.shape == (2, 2, 16)


@pytest.mark.parametrize("backward", [False, True])
def test_geometry_depends_only_on_arguments(backward):
    first = resolve_geometry(40, 300, 64, SM75, backward=backward)
    second = resolve_geometry(40, 300, 64, SM75, backward=backward)
    assert first == second
    assert resolve_block_geometry(40, 300) == resolve_block_geometry(40, 300)
