"""Framed AES-GCM envelope used for encrypted ingest payloads.

Layout on the wire::

    MAGIC (4) || nonce prefix (8) || frame*

    frame = header (4, big-endian) || ciphertext+tag

The header's top bit marks the final frame and the low 31 bits give the
ciphertext length. Each frame is sealed with nonce ``prefix || counter`` and
its own header as associated data, so reordering, truncation and tampering are
caught per frame. ``DecryptingReader`` releases plaintext only after its frame
authenticates, holding at most one frame in memory.
"""

import base64
import binascii
import logging
import os
import struct
from typing import BinaryIO, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ingest_shared.errors import DecryptionError

logger = logging.getLogger(__name__)

MAGIC = b"JLE1"
PREFIX_SIZE = 8
HEADER_SIZE = 4
TAG_SIZE = 16
DEFAULT_CHUNK = 64 * 1024
MAX_FRAME = 16 * 1024 * 1024
KEY_SIZES = (16, 24, 32)

_FINAL = 0x80000000


def load_key(value: str) -> bytes:
    """Parse a key given as hex or urlsafe base64 text."""
    value = value.strip()
    # base64 keys are often stored without their "=" padding
    padded = value + "=" * (-len(value) % 4)
    for decode, text in ((bytes.fromhex, value), (base64.urlsafe_b64decode, padded)):
        try:
            key = decode(text)
        except (ValueError, binascii.Error):
            continue
        if len(key) in KEY_SIZES:
            return key
    raise ValueError(f"Key must decode to {KEY_SIZES} bytes (hex or base64)")


def _nonce(prefix: bytes, counter: int) -> bytes:
    return prefix + struct.pack(">I", counter)


def _frames(key: bytes, chunks: Iterator[bytes]) -> Iterator[bytes]:
    aead = AESGCM(key)
    prefix = os.urandom(PREFIX_SIZE)
    yield MAGIC + prefix
    counter = 0
    pending = next(chunks, b"")
    while True:
        following = next(chunks, None)
        final = following is None
        header = struct.pack(">I", (len(pending) + TAG_SIZE) | (_FINAL if final else 0))
        yield header + aead.encrypt(_nonce(prefix, counter), pending, header)
        if final:
            return
        counter += 1
        pending = following


def _check_chunk_size(chunk_size: int):
    # a frame body carries the tag too, and the reader caps bodies at MAX_FRAME
    if not 0 < chunk_size <= MAX_FRAME - TAG_SIZE:
        raise ValueError(f"chunk_size must be in (0, {MAX_FRAME - TAG_SIZE}]")


def encrypt_payload(key: bytes, data: bytes, chunk_size: int = DEFAULT_CHUNK) -> bytes:
    _check_chunk_size(chunk_size)
    chunks = (data[i:i + chunk_size] for i in range(0, len(data), chunk_size))
    return b"".join(_frames(key, chunks))


def encrypt_stream(source: BinaryIO, dest: BinaryIO, key: bytes, chunk_size: int = DEFAULT_CHUNK) -> int:
    """Encrypt ``source`` into ``dest`` frame by frame. Returns bytes written."""
    _check_chunk_size(chunk_size)
    chunks = iter(lambda: source.read(chunk_size), b"")
    written = 0
    for block in _frames(key, chunks):
        dest.write(block)
        written += len(block)
    return written


class DecryptingReader:
    """File-like view of the plaintext inside an encrypted envelope."""

    def __init__(self, source: BinaryIO, key: bytes, chunk_size: int = DEFAULT_CHUNK):
        self._source = source
        self._key = key
        self._chunk_size = chunk_size
        self._aead = None
        self._prefix = b""
        self._counter = 0
        self._buffer = b""
        self._final_seen = False
        self._finished = False
        self.closed = False

    def _read_exact(self, size: int, what: str) -> bytes:
        data = b""
        while len(data) < size:
            try:
                chunk = self._source.read(size - len(data))
            except OSError as e:
                raise DecryptionError(f"Encrypted source read failed: {e}") from e
            if not chunk:
                if not data and what == "frame header":
                    return b""
                raise DecryptionError(f"Encrypted payload truncated in {what}")
            data += chunk
        return data

    def _start(self):
        header = self._read_exact(len(MAGIC) + PREFIX_SIZE, "envelope header")
        if header[:len(MAGIC)] != MAGIC:
            raise DecryptionError("Not an encrypted ingest payload")
        try:
            self._aead = AESGCM(self._key)
        except ValueError as e:
            raise DecryptionError(f"Invalid decryption key: {e}") from e
        self._prefix = header[len(MAGIC):]

    def _next_frame(self) -> bool:
        """Load the next frame's plaintext into the buffer. False at clean EOF."""
        header = self._read_exact(HEADER_SIZE, "frame header")
        if not header:
            if not self._final_seen:
                raise DecryptionError("Encrypted payload truncated before its final frame")
            return False
        if self._final_seen:
            raise DecryptionError("Encrypted payload has data after its final frame")
        (word,) = struct.unpack(">I", header)
        length = word & ~_FINAL
        if not TAG_SIZE <= length <= MAX_FRAME:
            raise DecryptionError(f"Encrypted frame length {length} out of range")
        sealed = self._read_exact(length, "frame body")
        try:
            self._buffer = self._aead.decrypt(_nonce(self._prefix, self._counter), sealed, header)
        except InvalidTag as e:
            logger.error(f"Authentication failed on encrypted frame {self._counter}")
            raise DecryptionError(f"Encrypted payload failed authentication at frame {self._counter}") from e
        self._counter += 1
        self._final_seen = bool(word & _FINAL)
        return True

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` plaintext bytes, or everything left when ``size`` is negative."""
        if size is None or size < 0:
            return b"".join(iter(lambda: self.read(self._chunk_size), b""))
        if self._finished or size == 0:
            return b""
        if self._aead is None:
            self._start()
        want = size
        while not self._buffer:
            if not self._next_frame():
                self._finished = True
                return b""
        data, self._buffer = self._buffer[:want], self._buffer[want:]
        return data

    def close(self):
        if not self.closed:
            self.closed = True
            self._source.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
