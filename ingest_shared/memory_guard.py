import logging
from typing import Optional

import psutil

logger = logging.getLogger(__name__)


class MemoryGuard:
    """Watch process memory and trip before the process runs out of it."""

    def __init__(self, threshold_percent=80, max_rss_mb: Optional[float] = None, check_every=256):
        self.threshold_percent = threshold_percent
        self.max_rss_mb = max_rss_mb
        self.check_every = max(1, check_every)
        self.tripped = False
        self._calls = 0
        self._process = psutil.Process()
        self.total_bytes = psutil.virtual_memory().total

    def get_rss_mb(self):
        """Resident set size of this process in MiB."""
        try:
            return self._process.memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            logger.error(f"Error reading process memory: {e}")
            return None

    def get_memory_usage(self):
        """Process RSS as a percentage of total system memory."""
        rss_mb = self.get_rss_mb()
        if rss_mb is None:
            return 100.0  # Assume full if we can't read
        return (rss_mb * 1024 * 1024 / self.total_bytes) * 100

    def exceeded(self):
        """Return True once memory crosses a limit. Usable as a cancel check."""
        if self.tripped:
            return True
        self._calls += 1
        if (self._calls - 1) % self.check_every:
            return False

        usage = self.get_memory_usage()
        if usage >= self.threshold_percent:
            logger.warning(f"Process memory usage ({usage:.1f}%) exceeds threshold ({self.threshold_percent}%). Stopping ingestion.")
            self.tripped = True
        elif self.max_rss_mb is not None:
            rss_mb = self.get_rss_mb()
            if rss_mb is not None and rss_mb >= self.max_rss_mb:
                logger.warning(f"Process RSS ({rss_mb:.1f} MiB) exceeds limit ({self.max_rss_mb} MiB). Stopping ingestion.")
                self.tripped = True
        return self.tripped

    def reset(self):
        self.tripped = False
        self._calls = 0
