#!/usr/bin/env python3
"""Shared pytest fixtures for the json-lite ingest test suite."""

import pytest
import io
import pathlib
import sys
from typing import Any, Callable, List, Tuple
from unittest.mock import MagicMock, patch

# Add parent directory to path for imports
sys.path.insert(0, str(pathlib.Path(__file__).parent.parent))

from tests.fixtures.generate_test_data import generate_people_json


# ============================================================================
# Stream helpers
# ============================================================================

class TrackingStream(io.BytesIO):
    """BytesIO that remembers whether it was closed and how many reads it served."""

    def __init__(self, data: bytes = b""):
        super().__init__(data)
        self.reads = 0
        self.close_calls = 0

    def read(self, size=-1):
        self.reads += 1
        return super().read(size)

    def close(self):
        self.close_calls += 1
        super().close()


class FailingStream(TrackingStream):
    """Serves ``fail_after`` bytes and then raises OSError."""

    def __init__(self, data: bytes, fail_after: int):
        super().__init__(data)
        self.fail_after = fail_after

    def read(self, size=-1):
        if self.tell() >= self.fail_after:
            raise OSError("device went away")
        if size is None or size < 0:
            size = self.fail_after - self.tell()
        return super().read(min(size, self.fail_after - self.tell()))


class Recorder:
    """Collects (field, record) pairs in delivery order."""

    def __init__(self):
        self.calls: List[Tuple[str, Any]] = []

    def on(self, field_name: str) -> Callable[[Any], None]:
        return lambda record: self.calls.append((field_name, record))

    def values(self, field_name: str) -> List[Any]:
        return [record for name, record in self.calls if name == field_name]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def make_stream():
    """Build a TrackingStream from text or bytes."""
    def _make(data):
        if isinstance(data, str):
            data = data.encode("utf-8")
        return TrackingStream(data)
    return _make


@pytest.fixture
def failing_stream():
    """Build a stream that raises OSError once ``fail_after`` bytes are served."""
    def _make(data: bytes, fail_after: int):
        return FailingStream(data, fail_after)
    return _make


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def ingestor():
    """Create a StreamingRecordIngestor with a small buffer to exercise refills."""
    from ingest_shared.streaming_ingestor import StreamingRecordIngestor
    return StreamingRecordIngestor(buf_size=1024)


@pytest.fixture
def aes_key() -> bytes:
    return bytes(range(32))


@pytest.fixture
def people_file(tmp_path) -> pathlib.Path:
    """A people document with 200 names, 200 genders and two padding members."""
    path = tmp_path / "people.json"
    generate_people_json(str(path), 200, padding_members=2, padding_kb=4)
    return path


@pytest.fixture
def clean_environment(monkeypatch):
    """Ensure no INGEST_* variables leak into a test."""
    for var in ['INGEST_BUF_SIZE', 'INGEST_MEMORY_THRESHOLD', 'INGEST_MAX_RSS_MB',
                'INGEST_KEY', 'INGEST_DEBUG', 'PORT']:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def mock_psutil():
    """Patch psutil in the memory guard with a 8GB machine and a 1GB process."""
    with patch('ingest_shared.memory_guard.psutil') as mock:
        mock.Error = Exception
        mock.virtual_memory.return_value = MagicMock(total=8 * 1024 * 1024 * 1024)
        mem_info = MagicMock()
        mem_info.rss = 1 * 1024 * 1024 * 1024
        mock.Process.return_value.memory_info.return_value = mem_info
        yield mock


@pytest.fixture
def memory_profiler():
    """Setup memory profiling for tests."""
    try:
        from memory_profiler import memory_usage
    except ImportError:
        pytest.skip("memory_profiler not installed")

    def profile_memory(func, *args, **kwargs):
        """Peak RSS in MiB while running ``func``."""
        peak = memory_usage((func, args, kwargs), interval=0.01, max_usage=True)
        return max(peak) if isinstance(peak, list) else peak

    return profile_memory


# ============================================================================
# Test Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")
    config.addinivalue_line("markers", "benchmark: marks benchmark tests")
