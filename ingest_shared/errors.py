"""Error kinds raised by the streaming ingestor."""


class IngestError(Exception):
    """Base class for every ingestion failure."""


class ParseError(IngestError, ValueError):
    """Malformed input. ``offset`` is the byte count consumed when detected."""

    def __init__(self, message: str, offset: int = 0):
        super().__init__(f"{message} (at byte {offset})")
        self.message = message
        self.offset = offset


class IngestIOError(IngestError, OSError):
    """The underlying stream could not be read."""


class DecryptionError(IngestIOError):
    """The decryption transform rejected the stream."""


class Cancelled(IngestError):
    """A cooperative stop was requested mid-parse."""
