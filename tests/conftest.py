"""Shared pytest fixtures for file_sync tests."""

import time
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from file_sync import FileSyncSystem, SyncSettings, SyncState


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll `predicate` until it is true or `timeout` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def make_settings(
    output_root: Path,
    include: Sequence[str] = (r".*\.txt$",),
    ignore: Sequence[str] = (r"^\.",),
    ignore_paths: Sequence[str] = (),
) -> SyncSettings:
    return SyncSettings(
        source_include_patterns=tuple(include),
        ignore_patterns=tuple(ignore),
        output_root=output_root.resolve(),
        ignore_paths=tuple(ignore_paths),
    )


@pytest.fixture
def src(tmp_path: Path) -> Path:
    path = tmp_path.resolve() / "src"
    path.mkdir()
    return path


@pytest.fixture
def out(tmp_path: Path) -> Path:
    return tmp_path.resolve() / "out"


@pytest.fixture
def engine():
    """A FileSyncSystem with short delays, always stopped after the test."""
    system = FileSyncSystem(settle_delay=0.3, retry_delay=0.05, max_retry_time=0.5)
    yield system
    system.stop_listening(timeout=15)


@pytest.fixture
def start_engine(engine):
    """Start `engine` and wait for its initial sync to finish."""

    def _start(root: Path, settings: SyncSettings, cancellation: Optional[object] = None):
        handle = engine.start_listening(root, settings, cancellation)
        assert wait_until(lambda: engine.state is SyncState.RUNNING)
        return handle

    return _start
