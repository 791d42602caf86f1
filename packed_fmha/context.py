# packed_fmha/context.py
from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Optional

import torch

from packed_fmha.allocation import TorchAllocator
from packed_fmha.config import RuntimeConfig
from packed_fmha.device import DeviceProperties
from packed_fmha.dispatch import KernelBackend
from packed_fmha.rng import PhiloxGenerator, default_generator


@dataclass
class FmhaContext:
    """
    Capabilities a packed FMHA call runs against.

    Passed explicitly to every entry point instead of being looked up from
    globals: the kernel backend, the device generation used for kernel
    selection, the shared dropout generator, the allocator and the device type
    every tensor must live on.
    """

    backend: KernelBackend
    device_props: DeviceProperties
    generator: PhiloxGenerator
    allocator: TorchAllocator = field(default_factory=TorchAllocator)
    device_type: str = "cuda"
    config: RuntimeConfig = field(default_factory=RuntimeConfig.from_env)

    @classmethod
    def for_device(
        cls,
        device=None,
        backend: Optional[KernelBackend] = None,
        generator: Optional[PhiloxGenerator] = None,
    ) -> "FmhaContext":
        """CUDA context for `device`, defaulting to the reference kernels and per-device generator."""
        if backend is None:
            from packed_fmha.kernels.reference import ReferenceKernels

            backend = ReferenceKernels()
        device = torch.device(device) if device is not None else torch.device("cuda", torch.cuda.current_device())
        return cls(
            backend=backend,
            device_props=DeviceProperties.from_device(device),
            generator=generator if generator is not None else default_generator(device),
        )

    def stream(self, device: torch.device):
        if self.device_type == "cuda":
            return torch.cuda.current_stream(device)
        return None

    def device_guard(self, device: torch.device):
        # Launch on the tensors' device rather than the current one.
        if self.device_type == "cuda":
            return torch.cuda.device(device)
        return nullcontext()
