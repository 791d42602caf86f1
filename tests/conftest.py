import os
import sys
from pathlib import Path

import pytest


# Ensure project root (and this directory, for the shared helpers) is on sys.path
ROOT = Path(__file__).resolve().parents[1]
for path in (ROOT, Path(__file__).resolve().parent):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))


def pytest_configure(config):
    # Register custom markers to silence PytestUnknownMarkWarning
    config.addinivalue_line("markers", "gpu: tests requiring CUDA")


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    # Host switches come from the environment; tests pass explicit configs.
    for name in list(os.environ):
        if name.startswith("PACKED_FMHA_"):
            monkeypatch.delenv(name, raising=False)
