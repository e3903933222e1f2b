from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Ensure local "src/" takes precedence over any globally-installed "mintkit" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    # Keep a developer's .env / shell config out of the tests.
    for k in list(os.environ):
        if k.startswith("MINTKIT_"):
            monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("MINTKIT_DOTENV_PATH", "/nonexistent/.env")

    from mintkit.env import reset_dotenv_state

    reset_dotenv_state()
    yield
    reset_dotenv_state()
