#!/usr/bin/env python3
from fastapi import FastAPI, UploadFile, File, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
import logging

from ingest_shared.crypto import DecryptingReader
from ingest_shared.errors import Cancelled, DecryptionError, IngestIOError, ParseError
from ingest_shared.memory_guard import MemoryGuard
from ingest_shared.settings import Settings
from ingest_shared.streaming_ingestor import StreamingRecordIngestor

app = FastAPI(title="JSON-Lite Ingest")
logger = logging.getLogger(__name__)

request_counter = Counter("ingest_requests_total", "Total ingest uploads")
process_duration = Histogram("ingest_process_seconds", "Time spent ingesting")
record_counter = Counter("ingest_records_total", "Records delivered per field", ["field"])
failure_counter = Counter("ingest_failures_total", "Failed ingests by error kind", ["kind"])

settings = Settings.from_env()


def get_settings() -> Settings:
    return settings


def _ingest(stream, current: Settings):
    ingestor = StreamingRecordIngestor(buf_size=current.buf_size)
    guard = MemoryGuard(threshold_percent=current.memory_threshold, max_rss_mb=current.max_rss_mb)
    return ingestor.ingest(stream, lambda record: None, lambda record: None, cancel=guard.exceeded)


@app.get("/health", tags=["ops"])
def health():
    return {"status": "healthy"}


@app.get("/metrics", tags=["ops"])
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/ingest/file", tags=["ingest"])
async def ingest_file(file: UploadFile = File(...), encrypted: bool = False):
    request_counter.inc()
    current = get_settings()
    stream = file.file
    if encrypted:
        if current.key is None:
            await file.close()
            failure_counter.labels(kind="config").inc()
            raise HTTPException(status_code=400, detail="Encrypted upload but INGEST_KEY is not configured")
        stream = DecryptingReader(stream, current.key, chunk_size=current.buf_size)

    try:
        with process_duration.time():
            stats = await run_in_threadpool(_ingest, stream, current)
    except ParseError as e:
        failure_counter.labels(kind="parse").inc()
        raise HTTPException(status_code=422, detail={"error": e.message, "offset": e.offset})
    except DecryptionError as e:
        failure_counter.labels(kind="decrypt").inc()
        raise HTTPException(status_code=400, detail=str(e))
    except IngestIOError as e:
        failure_counter.labels(kind="io").inc()
        raise HTTPException(status_code=500, detail=str(e))
    except Cancelled as e:
        failure_counter.labels(kind="cancelled").inc()
        raise HTTPException(status_code=503, detail=str(e))

    for field_name, count in stats.counts.items():
        record_counter.labels(field=field_name).inc(count)
    return JSONResponse({
        "filename": file.filename,
        "bytes": stats.bytes_read,
        "counts": stats.counts,
        "skipped_members": stats.skipped_members,
    })


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
