# packed_fmha/config.py
from __future__ import annotations

import os
from dataclasses import dataclass


_FALSE_VALUES = {"0", "false", "no"}


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() not in _FALSE_VALUES


@dataclass(frozen=True)
class RuntimeConfig:
    """
    Host-side switches for the orchestration layer.

    check_offsets: validate offset values (requires a device -> host copy of
        cu_seqlens, so it is off by default).
    log_params: log the full parameter record at DEBUG level before each launch.
    profile: count dispatches and accumulate host-side orchestration time.
    """

    check_offsets: bool = False
    log_params: bool = False
    profile: bool = False

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        return cls(
            check_offsets=_env_flag("PACKED_FMHA_CHECK_OFFSETS"),
            log_params=_env_flag("PACKED_FMHA_LOG_PARAMS"),
            profile=_env_flag("PACKED_FMHA_PROFILE"),
        )
