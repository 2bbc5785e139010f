#!/usr/bin/env python3
"""Constant-memory ingestion of selected top-level arrays from a JSON object.

Only the elements of the requested members are ever built into Python
objects, one at a time; every other member is skipped at the event level.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import ijson
from ijson.common import IncompleteJSONError, JSONError, ObjectBuilder

from ingest_shared.errors import Cancelled, IngestError, IngestIOError, ParseError

logger = logging.getLogger(__name__)

DEFAULT_BUF_SIZE = 64 * 1024

FieldRecord = Any
Handler = Callable[[FieldRecord], None]
CancelCheck = Callable[[], bool]
Event = Tuple[str, Any]

_OPEN = ("start_map", "start_array")
_CLOSE = ("end_map", "end_array")


@dataclass
class IngestStats:
    counts: Dict[str, int] = field(default_factory=dict)
    skipped_members: int = 0
    bytes_read: int = 0
    elapsed: float = 0.0


@dataclass
class ParseResult:
    """Records retained from the ``name`` and ``gender`` arrays, in source order."""
    names: List[FieldRecord] = field(default_factory=list)
    genders: List[FieldRecord] = field(default_factory=list)
    stats: Optional[IngestStats] = None


class _CountingReader:
    """Tracks bytes handed to the parser and turns read failures into IngestIOError."""

    def __init__(self, stream):
        self._stream = stream
        self.offset = 0

    def read(self, size=-1):
        try:
            data = self._stream.read(size)
        except IngestError:
            raise
        except OSError as e:
            raise IngestIOError(f"Stream read failed: {e}") from e
        self.offset += len(data)
        return data


class StreamingRecordIngestor:
    """Dispatch elements of top-level array members to per-field handlers."""

    def __init__(self, buf_size: int = DEFAULT_BUF_SIZE):
        self.buf_size = buf_size

    def ingest(self, stream, on_name: Handler, on_gender: Handler,
               cancel: Optional[CancelCheck] = None) -> IngestStats:
        return self.ingest_fields(stream, {"name": on_name, "gender": on_gender}, cancel)

    def collect(self, stream, cancel: Optional[CancelCheck] = None,
                project: Optional[Callable[[FieldRecord], Any]] = None) -> ParseResult:
        """Ingest and keep every record (or ``project(record)``) in a ParseResult."""
        result = ParseResult()
        keep = project or (lambda record: record)
        result.stats = self.ingest(
            stream,
            lambda record: result.names.append(keep(record)),
            lambda record: result.genders.append(keep(record)),
            cancel,
        )
        return result

    def ingest_fields(self, stream, handlers: Mapping[str, Handler],
                      cancel: Optional[CancelCheck] = None) -> IngestStats:
        """Stream ``stream`` once, calling ``handlers[key]`` for each element of
        the top-level array ``key``. The stream is closed on every exit path."""
        start = time.time()
        reader = _CountingReader(stream)
        stats = IngestStats(counts={key: 0 for key in handlers})
        try:
            self._check(cancel, reader)
            self._walk(self._events(reader), reader, handlers, cancel, stats)
        except Cancelled:
            logger.warning(f"Ingestion cancelled after {reader.offset} bytes: {stats.counts}")
            raise
        except ParseError as e:
            logger.error(f"stream parse failed: {e}")
            raise
        except IngestIOError as e:
            logger.error(f"stream read failed: {e}")
            raise
        finally:
            stream.close()

        stats.bytes_read = reader.offset
        stats.elapsed = time.time() - start
        logger.info(f"Ingested {stats.counts} from {stats.bytes_read} bytes in {stats.elapsed:.2f}s "
                    f"({stats.skipped_members} members skipped)")
        return stats

    def _events(self, reader) -> Iterator[Event]:
        """ijson events with parser failures mapped to ParseError.

        Only errors raised while the parser runs pass through here; anything a
        handler raises between events never enters this generator.
        """
        try:
            yield from ijson.basic_parse(reader, buf_size=self.buf_size, use_float=True)
        except IncompleteJSONError as e:
            raise ParseError(f"Incomplete JSON: {e}", reader.offset) from e
        except JSONError as e:
            raise ParseError(f"Invalid JSON: {e}", reader.offset) from e
        except UnicodeDecodeError as e:
            raise ParseError(f"Input is not valid UTF-8: {e}", reader.offset) from e

    def _walk(self, events: Iterator[Event], reader, handlers, cancel, stats):
        event, _ = self._next(events, reader)
        if event != "start_map":
            raise ParseError(f"Top-level value must be an object, got {event}", reader.offset)

        for event, value in events:
            if event == "end_map":
                break
            self._check(cancel, reader)
            handler = handlers.get(value)
            if handler is None:
                self._skip(events, reader)
                stats.skipped_members += 1
                continue
            stats.counts[value] += self._scan_array(value, events, reader, handler, cancel)

        # Drain so trailing garbage is reported
        for event, _ in events:
            raise ParseError(f"Unexpected {event} after top-level object", reader.offset)

    def _scan_array(self, key, events, reader, handler, cancel) -> int:
        event, _ = self._next(events, reader)
        if event != "start_array":
            raise ParseError(f"Member {key!r} must be an array, got {event}", reader.offset)

        delivered = 0
        for event, value in events:
            if event == "end_array":
                return delivered
            self._check(cancel, reader)
            handler(self._build(event, value, events, reader))
            delivered += 1
        raise ParseError(f"Array {key!r} is not terminated", reader.offset)

    def _build(self, event, value, events, reader) -> FieldRecord:
        if event not in _OPEN:
            return value
        builder = ObjectBuilder()
        builder.event(event, value)
        depth = 1
        for event, value in events:
            builder.event(event, value)
            if event in _OPEN:
                depth += 1
            elif event in _CLOSE:
                depth -= 1
                if depth == 0:
                    return builder.value
        raise ParseError("Element is not terminated", reader.offset)

    def _skip(self, events, reader):
        event, _ = self._next(events, reader)
        if event not in _OPEN:
            return
        depth = 1
        for event, _ in events:
            if event in _OPEN:
                depth += 1
            elif event in _CLOSE:
                depth -= 1
                if depth == 0:
                    return
        raise ParseError("Value is not terminated", reader.offset)

    @staticmethod
    def _next(events, reader) -> Event:
        try:
            return next(events)
        except StopIteration:
            raise ParseError("Unexpected end of input", reader.offset)

    @staticmethod
    def _check(cancel, reader):
        if cancel is not None and cancel():
            raise Cancelled(f"Cancelled after {reader.offset} bytes")


_default = StreamingRecordIngestor()


def ingest(stream, on_name: Handler, on_gender: Handler,
           cancel: Optional[CancelCheck] = None) -> IngestStats:
    """Ingest ``stream`` with a default-configured StreamingRecordIngestor."""
    return _default.ingest(stream, on_name, on_gender, cancel)
