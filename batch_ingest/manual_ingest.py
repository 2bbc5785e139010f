#!/usr/bin/env python3
"""Pull the name/gender arrays out of gigantic (optionally encrypted) JSON files with constant RAM."""

import argparse, dataclasses, json, logging, pathlib, signal, sys, threading
from typing import Optional

from ingest_shared.crypto import DecryptingReader, encrypt_stream, load_key
from ingest_shared.errors import Cancelled, IngestIOError, ParseError
from ingest_shared.memory_guard import MemoryGuard
from ingest_shared.settings import Settings
from ingest_shared.streaming_ingestor import StreamingRecordIngestor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARSE = 1
EXIT_CONFIG = 2
EXIT_IO = 3
EXIT_CANCELLED = 130


def get_json_depth(obj, current_depth=0):
    """Recursively calculate the maximum depth of a JSON value."""
    if isinstance(obj, dict):
        if not obj:
            return current_depth
        return max(get_json_depth(v, current_depth + 1) for v in obj.values())
    elif isinstance(obj, list):
        if not obj:
            return current_depth
        return max(get_json_depth(item, current_depth + 1) for item in obj)
    else:
        return current_depth


class RecordSink:
    """Per-field callbacks: either stream records out as JSON lines or just measure them."""

    def __init__(self, emit="summary", out=None):
        self.emit = emit
        self.out = out or sys.stdout
        self.max_depth = 0

    def handler(self, field_name):
        def on_record(record):
            self.max_depth = max(self.max_depth, get_json_depth(record))
            if self.emit == "jsonl":
                self.out.write(json.dumps({"field": field_name, "value": record}, ensure_ascii=False))
                self.out.write("\n")
        return on_record


def open_source(path: pathlib.Path, key: Optional[bytes], buf_size: int):
    f = open(path, 'rb')
    if key is None:
        return f
    return DecryptingReader(f, key, chunk_size=buf_size)


def process(path: pathlib.Path, settings: Settings, emit="summary", stop: Optional[threading.Event] = None,
            guard: Optional[MemoryGuard] = None, out=None):
    """Ingest one file and return the stats. Raises the ingest error kinds unchanged."""
    stop = stop or threading.Event()
    guard = guard or MemoryGuard(threshold_percent=settings.memory_threshold, max_rss_mb=settings.max_rss_mb)
    sink = RecordSink(emit, out)
    ingestor = StreamingRecordIngestor(buf_size=settings.buf_size)

    def cancelled():
        return stop.is_set() or guard.exceeded()

    stats = ingestor.ingest(
        open_source(path, settings.key, settings.buf_size),
        sink.handler("name"),
        sink.handler("gender"),
        cancel=cancelled,
    )
    logger.info("Done %s names, %s genders (max element depth %s) in %.2fs",
                stats.counts["name"], stats.counts["gender"], sink.max_depth, stats.elapsed)
    return stats


def run_ingest(args, settings: Settings) -> int:
    stop = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
    try:
        process(args.file, settings, emit=args.emit, stop=stop)
    except ParseError as e:
        logger.error("Malformed input in %s: %s", args.file, e)
        return EXIT_PARSE
    except IngestIOError as e:
        logger.error("Could not read %s: %s", args.file, e)
        return EXIT_IO
    except Cancelled as e:
        logger.warning("Stopped: %s", e)
        return EXIT_CANCELLED
    except OSError as e:
        logger.error("Could not open %s: %s", args.file, e)
        return EXIT_IO
    finally:
        signal.signal(signal.SIGINT, previous)
    return EXIT_OK


def run_encrypt(args, settings: Settings) -> int:
    if settings.key is None:
        logger.error("encrypt needs --key-file or INGEST_KEY")
        return EXIT_IO
    try:
        with open(args.src, 'rb') as src, open(args.dest, 'wb') as dest:
            written = encrypt_stream(src, dest, settings.key, chunk_size=settings.buf_size)
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG
    except OSError as e:
        logger.error("Could not encrypt %s: %s", args.src, e)
        return EXIT_IO
    logger.info("Wrote %s encrypted bytes to %s", written, args.dest)
    return EXIT_OK


def build_parser():
    ap = argparse.ArgumentParser(description=__doc__)
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    ap.add_argument("--key-file", type=pathlib.Path, help="file holding a hex/base64 AES key")
    ap.add_argument("--buf-size", type=int, help="override read buffer size in bytes")
    sub = ap.add_subparsers(dest="command")

    ing = sub.add_parser("ingest", help="stream name/gender records out of FILE")
    ing.add_argument("file", type=pathlib.Path)
    ing.add_argument("--memory-threshold", type=float, help="stop when process RSS exceeds this %% of RAM")
    ing.add_argument("--emit", choices=["summary", "jsonl"], default="summary")

    enc = sub.add_parser("encrypt", help="wrap SRC in the AES-GCM envelope")
    enc.add_argument("src", type=pathlib.Path)
    enc.add_argument("dest", type=pathlib.Path)
    return ap


def resolve_settings(args, settings: Settings) -> Settings:
    overrides = {}
    if args.key_file:
        overrides["key"] = load_key(args.key_file.read_text())
    if args.buf_size:
        overrides["buf_size"] = args.buf_size
    if getattr(args, "memory_threshold", None):
        overrides["memory_threshold"] = args.memory_threshold
    return dataclasses.replace(settings, **overrides)


def cli(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    try:
        settings = resolve_settings(args, Settings.from_env())
    except (ValueError, OSError) as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG
    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.command == "encrypt":
        return run_encrypt(args, settings)
    if args.command == "ingest":
        return run_ingest(args, settings)
    build_parser().print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(cli())
