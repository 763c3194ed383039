"""Job execution orchestration."""

import logging

import httpx

from src.api.models import BulkCheckResponse, UrlCheckResult
from src.jobs.manager import Job
from src.tools.bulk_check import check_urls
from src.tools.http_request import HTTP_TOOL_TIMEOUT, send_guarded

logger = logging.getLogger(__name__)

CALLBACK_MAX_REDIRECTS = 3


async def run_job(job: Job, client: httpx.AsyncClient | None = None) -> None:
    """Execute a bulk-check job, streaming one event per checked URL."""
    if job.is_cancelled:
        return
    job.status = "running"
    urls = job.request.urls

    async def _on_result(result: UrlCheckResult) -> None:
        job.results.append(result)
        job.urls_completed = len(job.results)
        job.current_url = result.url
        await job.emit_event("url_checked", result.model_dump(mode="json"))

    try:
        await job.emit_event("job_started", {"urls_total": len(urls)})
        results = await check_urls(
            urls,
            client=client,
            on_result=_on_result,
            should_stop=lambda: job.is_cancelled,
        )

        # cancel_job() already set the status and emitted job_cancelled
        if job.is_cancelled:
            return

        # Keep input order in the final listing
        job.results = results
        job.finish("completed")
        summary = BulkCheckResponse.from_results(results)
        await job.emit_event("job_done", {
            "status": "completed",
            "total": summary.total,
            "up": summary.up,
            "down": summary.down,
            "errors": summary.errors,
            "blocked": summary.blocked,
        })

        if job.request.callback_url:
            await _notify_callback(job, summary, client)

    except Exception as e:
        logger.error(f"Job {job.id} failed: {e}")
        if job.is_finished:
            return
        job.finish("failed")
        await job.emit_event("job_error", {"status": "failed", "error": str(e)})


async def _notify_callback(
    job: Job, summary: BulkCheckResponse, client: httpx.AsyncClient | None
) -> None:
    """POST the job summary to the caller's callback URL. Failures are logged only."""
    payload = {"job_id": job.id, **summary.model_dump(mode="json")}
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=HTTP_TOOL_TIMEOUT) as own_client:
                request = own_client.build_request("POST", job.request.callback_url, json=payload)
                response, _ = await send_guarded(own_client, request, CALLBACK_MAX_REDIRECTS)
        else:
            request = client.build_request("POST", job.request.callback_url, json=payload)
            response, _ = await send_guarded(client, request, CALLBACK_MAX_REDIRECTS)
        logger.info(f"Job {job.id}: callback returned {response.status_code}")
    except Exception as e:
        logger.warning(f"Job {job.id}: callback to {job.request.callback_url} failed: {e}")
