"""
Batch geometry for packed FMHA calls.

Turns the caller's (not necessarily tight) maximum sequence lengths into the
padded lengths the kernels are specialised for, and decides whether the key
sequence spans more than one tile (split accumulation through a float32
scratch buffer).

Everything here is a pure function of its arguments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from packed_fmha.device import DeviceProperties
from packed_fmha.errors import InvalidArgument


QUERY_TILE = 16
BLOCK_SPARSE_TILE = 256
_SNAP_SMALL = 128
_SNAP_LARGE = 256


@dataclass(frozen=True)
class BatchGeometry:
    tile: int            # key tile granularity
    max_seqlen_q: int    # padded query length (multiple of 16)
    max_seqlen_k: int    # padded key length (multiple of tile, or snapped)
    loop: bool           # split accumulation across key tiles

    @property
    def needs_split_accumulation(self) -> bool:
        return self.loop

    @property
    def blockmask_shape(self) -> Tuple[int, int]:
        return (self.max_seqlen_k // BLOCK_SPARSE_TILE, self.max_seqlen_q // QUERY_TILE)


def round_up(x: int, multiple: int) -> int:
    return ((x + multiple - 1) // multiple) * multiple


def _check_lengths(max_seqlen_q: int, max_seqlen_k: int) -> None:
    if max_seqlen_q < 0 or max_seqlen_k < 0:
        raise InvalidArgument(
            f"max_seqlen_q and max_seqlen_k must be non-negative, got {max_seqlen_q}, {max_seqlen_k}"
        )


def key_tile(head_dim: int, device_props: DeviceProperties, backward: bool = False) -> int:
    """Key tile granularity: 128 for wide heads (and older parts in backward), else 256."""
    if head_dim > 64:
        return 128
    if backward and device_props.is_sm75 and head_dim > 32:
        return 128
    return 256


def resolve_geometry(
    max_seqlen_q: int,
    max_seqlen_k: int,
    head_dim: int,
    device_props: DeviceProperties,
    backward: bool = False,
) -> BatchGeometry:
    """
    Dense / causal geometry.

    The padded key length is the next multiple of the tile, except that any max
    key length <= 128 snaps to 128 and any <= 256 snaps to 256, which keeps the
    set of kernel specialisations small.
    """
    _check_lengths(max_seqlen_q, max_seqlen_k)
    tile = key_tile(head_dim, device_props, backward=backward)
    padded_k = round_up(max_seqlen_k, tile)
    if max_seqlen_k <= _SNAP_SMALL:
        padded_k = _SNAP_SMALL
    elif max_seqlen_k <= _SNAP_LARGE:
        padded_k = _SNAP_LARGE
    padded_q = round_up(max_seqlen_q, QUERY_TILE)
    return BatchGeometry(tile=tile, max_seqlen_q=padded_q, max_seqlen_k=padded_k, loop=padded_k > tile)


def resolve_block_geometry(max_seqlen_q: int, max_seqlen_k: int) -> BatchGeometry:
    """Block-sparse geometry: fixed 256 key tile, padded key length at least 256."""
    _check_lengths(max_seqlen_q, max_seqlen_k)
    padded_k = max(round_up(max_seqlen_k, BLOCK_SPARSE_TILE), BLOCK_SPARSE_TILE)
    padded_q = round_up(max_seqlen_q, QUERY_TILE)
    return BatchGeometry(
        tile=BLOCK_SPARSE_TILE,
        max_seqlen_q=padded_q,
        max_seqlen_k=padded_k,
        loop=padded_k > BLOCK_SPARSE_TILE,
    )


__all__ = [
    "BatchGeometry",
    "QUERY_TILE",
    "BLOCK_SPARSE_TILE",
    "key_tile",
    "resolve_geometry",
    "resolve_block_geometry",
    "round_up",
]
