from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))

from staging_tree import StagingTree  # noqa: E402


def write_file(path, content: bytes = b"data", mode: int = 0o644) -> str:
    """Create *path* (and parents) with *content*; returns str(path)."""
    path = str(path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)
    os.chmod(path, mode)
    return path


def fake_elf(path, mode: int = 0o755) -> str:
    return write_file(path, b"\x7fELF\x02\x01\x01" + b"\x00" * 57, mode)


@pytest.fixture
def tree(tmp_path: Path):
    """A StagingTree rooted inside tmp_path, removed after the test."""
    with StagingTree(str(tmp_path / "stage"), keep=False) as t:
        yield t


@pytest.fixture
def host(tmp_path: Path) -> Path:
    """Directory standing in for the host filesystem."""
    d = tmp_path / "host"
    d.mkdir()
    return d
