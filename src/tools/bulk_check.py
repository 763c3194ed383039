"""Bulk URL reachability checker."""

import asyncio
import logging
import os
import re
import time
from typing import Awaitable, Callable
from urllib.parse import urlsplit, urlunsplit

import httpx

from src.api.models import UrlCheckResult
from src.exceptions import UnsafeUrlError
from src.tools.http_request import send_guarded
from src.utils.security import evaluate

logger = logging.getLogger(__name__)

BULK_CHECK_TIMEOUT = float(os.environ.get("BULK_CHECK_TIMEOUT", "10"))
BULK_CHECK_CHUNK_SIZE = int(os.environ.get("BULK_CHECK_CHUNK_SIZE", "50"))
BULK_CHECK_MAX_REDIRECTS = 10

USER_AGENT = "Netkit/1.0 (Bulk URL checker)"

_HAS_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)

ResultCallback = Callable[[UrlCheckResult], Awaitable[None]]


def prepare_url(raw: str) -> str | None:
    """Trim, default the scheme to https and IDNA-encode the hostname.

    Returns None for blank input; raises ValueError if the URL can't be built.
    """
    candidate = raw.strip()
    if not candidate:
        return None
    if not _HAS_SCHEME.match(candidate):
        candidate = "https://" + candidate

    parts = urlsplit(candidate)
    host = parts.hostname
    if not host:
        raise ValueError(f"URL has no hostname: {raw}")
    if host.isascii():
        return candidate

    # UnicodeError is a ValueError
    netloc = host.encode("idna").decode("ascii")
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    if "@" in parts.netloc:
        netloc = parts.netloc.rsplit("@", 1)[0] + "@" + netloc
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


async def check_url(client: httpx.AsyncClient, raw: str) -> UrlCheckResult | None:
    """Check a single URL. Returns None for blank input."""
    try:
        url = prepare_url(raw)
    except ValueError:
        return UrlCheckResult(url=raw, status="error", error="Invalid URL")
    if url is None:
        return None

    verdict = evaluate(url)
    if not verdict:
        logger.warning(f"Bulk check blocked {url}: {verdict.reason.value}")
        return UrlCheckResult(
            url=raw, status="blocked", error=verdict.message, reason=verdict.reason
        )

    start = time.perf_counter()
    try:
        request = client.build_request(
            "GET", url, headers={"User-Agent": USER_AGENT}, timeout=BULK_CHECK_TIMEOUT
        )
        response, _ = await send_guarded(
            client, request, BULK_CHECK_MAX_REDIRECTS, stream=True
        )
        # Only the status matters
        await response.aclose()
    except UnsafeUrlError as e:
        logger.warning(f"Bulk check blocked redirect from {url}: {e.reason}")
        return UrlCheckResult(url=raw, status="blocked", error=e.message, reason=e.reason)
    except httpx.TimeoutException:
        return UrlCheckResult(
            url=raw, status="error", error="Timeout", response_time=_elapsed_ms(start)
        )
    except Exception as e:
        return UrlCheckResult(
            url=raw,
            status="error",
            error=str(e) or type(e).__name__,
            response_time=_elapsed_ms(start),
        )

    return UrlCheckResult(
        url=raw,
        status="up" if response.is_success else "down",
        status_code=response.status_code,
        response_time=_elapsed_ms(start),
    )


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


async def check_urls(
    urls: list[str],
    client: httpx.AsyncClient | None = None,
    on_result: ResultCallback | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> list[UrlCheckResult]:
    """Check ``urls`` in concurrent chunks, keeping input order.

    ``on_result`` is awaited for every result as it completes.
    ``should_stop`` is polled between chunks.
    """
    if client is None:
        async with httpx.AsyncClient() as own_client:
            return await _check_all(own_client, urls, on_result, should_stop)
    return await _check_all(client, urls, on_result, should_stop)


async def _check_all(
    client: httpx.AsyncClient,
    urls: list[str],
    on_result: ResultCallback | None,
    should_stop: Callable[[], bool] | None,
) -> list[UrlCheckResult]:
    async def _one(raw: str) -> UrlCheckResult | None:
        result = await check_url(client, raw)
        if result is not None and on_result is not None:
            await on_result(result)
        return result

    results: list[UrlCheckResult] = []
    for i in range(0, len(urls), BULK_CHECK_CHUNK_SIZE):
        if should_stop is not None and should_stop():
            logger.info(f"Bulk check stopped after {len(results)} URLs")
            break
        chunk = urls[i : i + BULK_CHECK_CHUNK_SIZE]
        chunk_results = await asyncio.gather(*(_one(raw) for raw in chunk))
        results.extend(r for r in chunk_results if r is not None)

    logger.info(f"Bulk check finished: {len(results)} results")
    return results
