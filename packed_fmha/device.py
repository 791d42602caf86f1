# packed_fmha/device.py
from __future__ import annotations

from dataclasses import dataclass

import torch


@dataclass(frozen=True)
class DeviceProperties:
    """Compute capability of the device a call executes on."""

    major: int
    minor: int
    name: str = ""

    @property
    def is_sm75(self) -> bool:
        return self.major == 7 and self.minor == 5

    @property
    def is_sm80(self) -> bool:
        return self.major == 8 and self.minor == 0

    @property
    def is_sm8x(self) -> bool:
        return self.major == 8 and self.minor >= 0

    @property
    def is_sm90(self) -> bool:
        return self.major == 9 and self.minor == 0

    @property
    def supports_bf16(self) -> bool:
        return self.is_sm8x or self.is_sm90

    def __str__(self) -> str:
        label = f"sm{self.major}{self.minor}"
        return f"{label} ({self.name})" if self.name else label

    @classmethod
    def from_device(cls, device=None) -> "DeviceProperties":
        if not torch.cuda.is_available():
            raise RuntimeError("DeviceProperties.from_device requires CUDA")
        props = torch.cuda.get_device_properties(device)
        return cls(major=props.major, minor=props.minor, name=props.name)
