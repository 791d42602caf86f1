"""
Philox counter management for dropout.

Forward and backward must see the same random stream without transmitting the
dropout mask: both derive it from a shared (seed, offset) pair. The generator
is shared mutable state, so reading and advancing its offset happens under the
generator's mutex, and only for that long.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import torch


LOGGER = logging.getLogger(__name__)

# Per (batch, head) budget of random draws consumed by the kernels.
RANDOM_ELTS_PER_HEAD = 32
# Block-sparse backward: the caller restores the generator state afterwards,
# so the exact increment does not matter.
BLOCK_BWD_COUNTER_OFFSET = 4


@dataclass(frozen=True)
class PhiloxState:
    seed: int
    offset: int


class PhiloxGenerator:
    """
    Process-wide style generator: a seed plus a monotonically advancing offset.

    `philox_state` must be called with `mutex` held; `acquire_philox_state` does
    that for you.
    """

    def __init__(self, seed: int = 0, offset: int = 0):
        self.mutex = threading.Lock()
        self._seed = int(seed)
        self._offset = int(offset)

    @classmethod
    def from_torch(cls, generator: torch.Generator) -> "PhiloxGenerator":
        return cls(seed=generator.initial_seed())

    @property
    def seed(self) -> int:
        return self._seed

    def philox_state(self, increment: int) -> PhiloxState:
        # Offsets advance in multiples of 4 (one Philox call yields 4 values).
        increment = ((int(increment) + 3) // 4) * 4
        state = PhiloxState(seed=self._seed, offset=self._offset)
        self._offset += increment
        return state

    def get_state(self) -> PhiloxState:
        with self.mutex:
            return PhiloxState(seed=self._seed, offset=self._offset)

    def set_state(self, state: PhiloxState) -> None:
        with self.mutex:
            self._seed = state.seed
            self._offset = state.offset

    def manual_seed(self, seed: int) -> "PhiloxGenerator":
        self.set_state(PhiloxState(seed=int(seed), offset=0))
        return self


def counter_offset(batch_size: int, num_heads: int) -> int:
    """Random-counter increment for one dense call: b * h * 32."""
    return batch_size * num_heads * RANDOM_ELTS_PER_HEAD


def acquire_philox_state(generator: PhiloxGenerator, increment: int) -> PhiloxState:
    with generator.mutex:
        state = generator.philox_state(increment)
    LOGGER.debug("philox acquire seed=%d offset=%d increment=%d", state.seed, state.offset, increment)
    return state


_DEFAULT_GENERATORS: Dict[str, PhiloxGenerator] = {}
_DEFAULT_GENERATORS_LOCK = threading.Lock()


def _device_key(device) -> str:
    # "cuda" and "cuda:N" for the current N name the same generator; so do "cpu" and "cpu:0".
    device = torch.device(device) if device is not None else torch.device("cuda")
    if device.type == "cuda":
        index = device.index if device.index is not None else torch.cuda.current_device()
        return f"cuda:{index}"
    if device.type == "cpu":
        return "cpu"
    return str(device)


def default_generator(device: Optional[torch.device] = None) -> PhiloxGenerator:
    """Lazily created generator per physical device, seeded from torch.initial_seed()."""
    key = _device_key(device)
    with _DEFAULT_GENERATORS_LOCK:
        gen = _DEFAULT_GENERATORS.get(key)
        if gen is None:
            gen = PhiloxGenerator(seed=torch.initial_seed())
            _DEFAULT_GENERATORS[key] = gen
    return gen


__all__ = [
    "BLOCK_BWD_COUNTER_OFFSET",
    "PhiloxGenerator",
    "PhiloxState",
    "acquire_philox_state",
    "counter_offset",
    "default_generator",
]
