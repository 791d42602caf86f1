"""
Kernel dispatch for packed FMHA.

Kernels are an injected capability: a KernelBackend exposes one method per
(variant, direction) pair and receives the head-dim tier it is asked to run.
The router is a lookup table from (tier, variant, direction) to a KernelRoute
naming the backend method and the tier it is launched with; the table is
checked for totality when this module is imported. Inputs are assumed to have
passed validation, so a head dim with no tier is a caller bug, not a runtime
condition.
"""

import itertools
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, NamedTuple, Tuple, Union

from packed_fmha.params import LaunchParams


HEAD_DIM_TIERS = (32, 64, 128)
VARIANTS = ("dense", "causal", "block_sparse")
DIRECTIONS = ("fwd", "bwd")

_METHOD_PREFIX = {"dense": "dense", "causal": "causal", "block_sparse": "block"}


class KernelRoute(NamedTuple):
    method: str
    tier: int


DISPATCH_TABLE: Dict[Tuple[int, str, str], KernelRoute] = {
    (tier, variant, direction): KernelRoute(f"{_METHOD_PREFIX[variant]}_{direction}", tier)
    for tier, variant, direction in itertools.product(HEAD_DIM_TIERS, VARIANTS, DIRECTIONS)
}

_FMHA_DISPATCH_PROFILE: Dict[str, Union[int, float]] = {}
_FMHA_DISPATCH_PROFILE_LOCK = threading.Lock()


class KernelBackend:
    """
    Execution kernels for every (variant, direction) pair.

    Each method takes the launch envelope, the head-dim tier (32, 64 or 128) and
    a `configure` flag. With configure=True a kernel may inspect or adjust the
    launch (e.g. report `elts_per_thread`, resolve `num_splits`) but must not
    write outputs. Kernels run on `launch.stream` and must not keep pointers
    past the call.
    """

    def dense_fwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        raise NotImplementedError

    def dense_bwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        raise NotImplementedError

    def causal_fwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        raise NotImplementedError

    def causal_bwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        raise NotImplementedError

    def block_fwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        raise NotImplementedError

    def block_bwd(self, launch: LaunchParams, head_dim_tier: int, configure: bool = False) -> None:
        raise NotImplementedError


def _check_dispatch_table() -> None:
    for key in itertools.product(HEAD_DIM_TIERS, VARIANTS, DIRECTIONS):
        route = DISPATCH_TABLE.get(key)
        if route is None:
            raise RuntimeError(f"dispatch table has no entry for {key}")
        if route.tier != key[0]:
            raise RuntimeError(f"dispatch table entry {key} routes to tier {route.tier}")
        if not callable(getattr(KernelBackend, route.method, None)):
            raise RuntimeError(f"dispatch table entry {key} -> {route.method} is not a KernelBackend method")


_check_dispatch_table()


def head_dim_tier(head_dim: int) -> int:
    for tier in HEAD_DIM_TIERS:
        if head_dim <= tier:
            return tier
    raise AssertionError(f"head_dim={head_dim} has no kernel tier; inputs must be validated before dispatch")


def variant_for(is_causal: bool, block_sparse: bool = False) -> str:
    if block_sparse:
        return "block_sparse"
    return "causal" if is_causal else "dense"


def select_kernel(backend: KernelBackend, head_dim: int, variant: str, direction: str) -> Callable[..., None]:
    """Return `kernel(launch, configure=False)` bound to its tier."""
    route = DISPATCH_TABLE[(head_dim_tier(head_dim), variant, direction)]
    bound = getattr(backend, route.method)

    def kernel(launch: LaunchParams, configure: bool = False) -> None:
        bound(launch, route.tier, configure=configure)

    kernel.__name__ = f"{route.method}_hdim{route.tier}"
    return kernel


@contextmanager
def profile_dispatch(name: str, enabled: bool):
    """Count calls and host-side time per entry point (debug aid)."""
    if not enabled:
        yield
        return
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1e3
        with _FMHA_DISPATCH_PROFILE_LOCK:
            _FMHA_DISPATCH_PROFILE[f"{name}_calls"] = _FMHA_DISPATCH_PROFILE.get(f"{name}_calls", 0) + 1
            _FMHA_DISPATCH_PROFILE[f"{name}_host_ms_sum"] = (
                _FMHA_DISPATCH_PROFILE.get(f"{name}_host_ms_sum", 0.0) + elapsed_ms
            )


def reset_dispatch_profile() -> None:
    with _FMHA_DISPATCH_PROFILE_LOCK:
        _FMHA_DISPATCH_PROFILE.clear()


def get_dispatch_profile() -> Dict[str, Union[float, int]]:
    with _FMHA_DISPATCH_PROFILE_LOCK:
        return dict(_FMHA_DISPATCH_PROFILE)


__all__ = [
    "DISPATCH_TABLE",
    "HEAD_DIM_TIERS",
    "KernelBackend",
    "KernelRoute",
    "get_dispatch_profile",
    "head_dim_tier",
    "profile_dispatch",
    "reset_dispatch_profile",
    "select_kernel",
    "variant_for",
]
