import itertools
import threading

import pytest

from packed_fmha.dispatch import (
    DIRECTIONS,
    DISPATCH_TABLE,
    HEAD_DIM_TIERS,
    VARIANTS,
    KernelBackend,
    KernelRoute,
    get_dispatch_profile,
    head_dim_tier,
    profile_dispatch,
    reset_dispatch_profile,
    select_kernel,
    variant_for,
)
from packed_fmha.params import ForwardParams, LaunchParams

from _packed import RecordingBackend


def test_table_is_total():
    keys = set(itertools.product(HEAD_DIM_TIERS, VARIANTS, DIRECTIONS))
    assert set(DISPATCH_TABLE) == keys
    for (tier, _, _), route in DISPATCH_TABLE.items():
        assert isinstance(route, KernelRoute)
        assert route.tier == tier
        assert callable(getattr(KernelBackend, route.method))


def test_tiers_route_to_distinct_entries():
    for variant, direction in itertools.product(VARIANTS, DIRECTIONS):
        routes = {DISPATCH_TABLE[(tier, variant, direction)] for tier in HEAD_DIM_TIERS}
        assert len(routes) == len(HEAD_DIM_TIERS)
        assert {route.tier for route in routes} == set(HEAD_DIM_TIERS)


@pytest.mark.parametrize("head_dim,tier", [(16, 32), (32, 32), (40, 64), (64, 64), (72, 128), (128, 128)])
def test_head_dim_tier(head_dim, tier):
    assert head_dim_tier(head_dim) == tier


def test_head_dim_without_tier_is_a_caller_bug():
    with pytest.raises(AssertionError):
        head_dim_tier(136)


def test_variant_for():
    assert variant_for(False) == "dense"
    assert variant_for(True) == "causal"
    assert variant_for(True, block_sparse=True) == "block_sparse"


@pytest.mark.parametrize(
    "head_dim,variant,direction,expected",
    [
        (32, "dense", "fwd", ("dense_fwd", 32)),
        (64, "causal", "bwd", ("causal_bwd", 64)),
        (128, "block_sparse", "fwd", ("block_fwd", 128)),
        (48, "block_sparse", "bwd", ("block_bwd", 64)),
    ],
)
def test_select_kernel_routes_to_backend(head_dim, variant, direction, expected):
    backend = RecordingBackend()
    kernel = select_kernel(backend, head_dim, variant, direction)
    launch = LaunchParams(params=ForwardParams())
    kernel(launch, configure=True)
    kernel(launch)
    assert backend.launches == [expected + (True,), expected + (False,)]
    assert kernel.__name__ == f"{expected[0]}_hdim{expected[1]}"


def test_base_backend_is_abstract():
    kernel = select_kernel(KernelBackend(), 64, "dense", "fwd")
    with pytest.raises(NotImplementedError):
        kernel(LaunchParams(params=ForwardParams()))


def test_profile_dispatch_counts_calls():
    reset_dispatch_profile()
    for _ in range(2):
        with profile_dispatch("fwd", enabled=True):
            pass
    with profile_dispatch("bwd", enabled=False):
        pass
    profile = get_dispatch_profile()
    assert profile["fwd_calls"] == 2
    assert profile["fwd_host_ms_sum"] >= 0.0
    assert "bwd_calls" not in profile
    reset_dispatch_profile()
    assert get_dispatch_profile() == {}


def test_profile_dispatch_counts_every_thread():
    reset_dispatch_profile()
    n_threads, per_thread = 8, 200

    def worker():
        for _ in range(per_thread):
            with profile_dispatch("fwd", enabled=True):
                pass

    threads = [threading.Thread(target=worker) for _ in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert get_dispatch_profile()["fwd_calls"] == n_threads * per_thread
    reset_dispatch_profile()
