"""API endpoints for the URL guard, HTTP request tool and bulk-check jobs."""

import logging
import os

from fastapi import APIRouter, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sse_starlette.sse import EventSourceResponse

from src.api.models import (
    BulkCheckRequest,
    BulkCheckResponse,
    HttpRequestPayload,
    HttpRequestResult,
    JobRequest,
    JobStatus,
    UrlEvaluateRequest,
    UrlVerdictResponse,
)
from src.exceptions import ValidationError
from src.jobs.manager import Job, JobManager
from src.tools.bulk_check import check_urls
from src.tools.http_request import execute_request
from src.utils.security import evaluate

logger = logging.getLogger(__name__)

RATE_LIMIT = os.environ.get("RATE_LIMIT", "30/minute")
MAX_CONCURRENT_JOBS = int(os.environ.get("MAX_CONCURRENT_JOBS", "5"))
# Only enable behind a proxy that overwrites these headers
TRUST_PROXY_HEADERS = os.environ.get("TRUST_PROXY_HEADERS", "").lower() in ("1", "true", "yes")


def client_ip(request: Request) -> str:
    """Rate-limit key: the socket peer, or proxy-reported client IP when trusted.

    With TRUST_PROXY_HEADERS set, CF-Connecting-IP wins, then the first
    X-Forwarded-For hop.
    """
    if not TRUST_PROXY_HEADERS:
        return get_remote_address(request)
    ip = request.headers.get("cf-connecting-ip", "").strip()
    if ip:
        return ip
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.split(",")[0].strip():
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


# swallow_errors: storage failures let the request through
limiter = Limiter(key_func=client_ip, swallow_errors=True)
router = APIRouter()

job_manager = JobManager()


def _require_urls(urls: list[str]) -> None:
    if not any(u.strip() for u in urls):
        raise ValidationError("urls", "at least one non-blank URL is required")


def _job_status(job: Job) -> JobStatus:
    return JobStatus(
        id=job.id,
        status=job.status,
        urls_completed=job.urls_completed,
        urls_total=job.urls_total,
        current_url=job.current_url,
        results=job.results,
    )


@router.post("/url/evaluate")
@limiter.limit(RATE_LIMIT)
async def evaluate_url(request: Request, payload: UrlEvaluateRequest) -> UrlVerdictResponse:
    """Run the SSRF guard on a URL without fetching it."""
    verdict = evaluate(payload.url)
    return UrlVerdictResponse(
        url=payload.url,
        safe=verdict.safe,
        reason=verdict.reason,
        message=verdict.message,
        hostname=verdict.hostname,
    )


@router.post("/http-request")
@limiter.limit(RATE_LIMIT)
async def http_request(request: Request, payload: HttpRequestPayload) -> HttpRequestResult:
    """Issue an HTTP request on the caller's behalf."""
    return await execute_request(payload)


@router.post("/bulk-check")
@limiter.limit(RATE_LIMIT)
async def bulk_check(request: Request, payload: BulkCheckRequest) -> BulkCheckResponse:
    """Check reachability of a list of URLs and return all results."""
    _require_urls(payload.urls)
    results = await check_urls(payload.urls)
    return BulkCheckResponse.from_results(results)


@router.post("/jobs")
@limiter.limit(RATE_LIMIT)
async def create_job(request: Request, payload: JobRequest) -> JobStatus:
    """Create and start a new bulk-check job."""
    _require_urls(payload.urls)
    if job_manager.active_job_count() >= MAX_CONCURRENT_JOBS:
        logger.warning(f"Job limit reached ({MAX_CONCURRENT_JOBS}), rejecting new job")
        raise HTTPException(
            status_code=429,
            detail=f"Too many active jobs (limit {MAX_CONCURRENT_JOBS}), try again later",
        )
    job = await job_manager.create_job(payload)
    logger.info(f"Created job {job.id} with {job.urls_total} URLs")
    return JobStatus(id=job.id, status=job.status, urls_total=job.urls_total)


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str) -> EventSourceResponse:
    """SSE stream of job progress events."""
    job = job_manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return EventSourceResponse(
        job.event_stream(),
        ping=15,
    )


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str) -> JobStatus:
    """Cancel a running job."""
    job = await job_manager.cancel_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_status(job)


@router.get("/jobs/{job_id}/status")
async def get_job_status(job_id: str) -> JobStatus:
    """Get current status of a job, including results so far."""
    job = job_manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_status(job)


@router.get("/health/ready")
async def health_ready() -> dict:
    """Report readiness and a self-check of the URL guard."""
    issues = []
    checks = {}

    # The guard must refuse a metadata endpoint and accept a public host
    guard_ok = not evaluate("http://169.254.169.254/") and bool(evaluate("https://example.com/"))
    checks["ssrf_guard"] = {"status": "ok" if guard_ok else "error"}
    if not guard_ok:
        issues.append("SSRF guard self-check failed")

    checks["jobs"] = {"status": "ok", "active": job_manager.active_job_count()}

    return {"ready": len(issues) == 0, "issues": issues, "checks": checks}
