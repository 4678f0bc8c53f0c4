"""JSON API endpoints for lookups, subject data, backfill and retry."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tracker.context import AppContext

log = structlog.get_logger(__name__)

router = APIRouter()


class LookupRequest(BaseModel):
    url: str


def _context(request: Request) -> AppContext:
    return request.app.state.context


@router.post("/lookup")
async def lookup(body: LookupRequest, request: Request) -> JSONResponse:
    """Resolve a submission URL; the author's backfill starts in the background."""
    result = await _context(request).lookup.lookup_url(body.url)
    log.info("api_lookup", natural_key=result.record.natural_key, subject=result.record.subject)
    return JSONResponse(content=result.to_dict())


@router.get("/subjects/{subject}/records")
async def get_records(subject: str, request: Request) -> JSONResponse:
    records = await _context(request).lookup.load_subject(subject)
    return JSONResponse(content={"subject": subject, "records": [r.to_dict() for r in records]})


@router.get("/subjects/{subject}/stats")
async def get_stats(subject: str, request: Request) -> JSONResponse:
    """Identifier stats; entries still loading are completed over the WebSocket."""
    stats = await _context(request).lookup.identifier_stats(subject)
    return JSONResponse(content={"subject": subject, "stats": [s.to_dict() for s in stats]})


@router.get("/subjects/{subject}/summary")
async def get_summary(subject: str, request: Request) -> JSONResponse:
    summary = await _context(request).lookup.summary(subject)
    return JSONResponse(
        content={"subject": subject, "summary": summary.to_dict() if summary is not None else None}
    )


@router.get("/subjects/{subject}/progress")
async def get_progress(subject: str, request: Request) -> JSONResponse:
    progress = _context(request).lookup.backfill_progress(subject)
    return JSONResponse(content={"subject": subject, "progress": progress})


@router.get("/subjects/{subject}/failed")
async def get_failed(subject: str, request: Request) -> JSONResponse:
    records = await _context(request).lookup.failed_records(subject)
    return JSONResponse(content={"subject": subject, "records": [r.to_dict() for r in records]})


@router.post("/subjects/{subject}/backfill")
async def start_backfill(subject: str, request: Request) -> JSONResponse:
    job = await _context(request).lookup.start_backfill(subject)
    return JSONResponse(status_code=202, content={"subject": job.subject, "progress": job.to_progress()})


@router.post("/subjects/{subject}/retry")
async def retry_failed(subject: str, request: Request) -> JSONResponse:
    """Resubmit failed records and wait for them (bounded by the retry timeout)."""
    records = await _context(request).lookup.retry_failed(subject)
    return JSONResponse(content={"subject": subject, "records": [r.to_dict() for r in records]})
