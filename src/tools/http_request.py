"""Generic HTTP request tool: issues one caller-described request behind the SSRF guard."""

import logging
import os
import time

import httpx

from src.api.models import (
    HttpRequestPayload,
    HttpRequestResult,
    RequestTiming,
    ResponseMeta,
)
from src.exceptions import UnsafeUrlError, UpstreamRequestError
from src.utils.security import REASON_MESSAGES, UnsafeReason, validate_url_not_ssrf

logger = logging.getLogger(__name__)

HTTP_TOOL_TIMEOUT = float(os.environ.get("HTTP_TOOL_TIMEOUT", "15"))
HTTP_TOOL_MAX_REDIRECTS = int(os.environ.get("HTTP_TOOL_MAX_REDIRECTS", "5"))
HTTP_TOOL_MAX_BODY_BYTES = int(os.environ.get("HTTP_TOOL_MAX_BODY_BYTES", str(1024 * 1024)))

USER_AGENT = "Netkit/1.0 (HTTP request tool)"

BODYLESS_METHODS = {"GET", "HEAD"}


async def send_guarded(
    client: httpx.AsyncClient,
    request: httpx.Request,
    max_redirects: int,
    stream: bool = False,
) -> tuple[httpx.Response, int]:
    """Send ``request``, following redirects only to URLs the guard accepts.

    Returns the final response and the number of redirects followed. With
    ``stream=True`` the final body is left unread and the caller must close
    the response. Raises UnsafeUrlError if a redirect points somewhere unsafe.
    """
    response = await client.send(request, stream=stream, follow_redirects=False)
    redirects = 0
    try:
        while response.next_request is not None:
            if redirects >= max_redirects:
                raise UpstreamRequestError(
                    f"Too many redirects (limit {max_redirects})", url=str(request.url)
                )
            next_request = response.next_request
            validate_url_not_ssrf(str(next_request.url))
            await response.aclose()
            response = await client.send(next_request, stream=stream, follow_redirects=False)
            redirects += 1
    except BaseException:
        await response.aclose()
        raise
    return response, redirects


async def _read_body(response: httpx.Response) -> tuple[str, bool]:
    """Read at most HTTP_TOOL_MAX_BODY_BYTES of a streamed body, then close it."""
    chunks: list[bytes] = []
    size = 0
    truncated = False
    try:
        async for chunk in response.aiter_bytes():
            room = HTTP_TOOL_MAX_BODY_BYTES - size
            if len(chunk) > room:
                chunks.append(chunk[:room])
                truncated = True
                break
            chunks.append(chunk)
            size += len(chunk)
    finally:
        await response.aclose()
    raw = b"".join(chunks)
    return raw.decode(response.encoding or "utf-8", errors="replace"), truncated


async def execute_request(
    payload: HttpRequestPayload, client: httpx.AsyncClient | None = None
) -> HttpRequestResult:
    """Issue the request described by ``payload`` and capture the response.

    Raises UnsafeUrlError before any network activity if the URL is refused,
    and UpstreamRequestError on network failure or timeout.
    """
    url = validate_url_not_ssrf(payload.url)

    if client is None:
        async with httpx.AsyncClient(timeout=HTTP_TOOL_TIMEOUT) as own_client:
            return await _execute(own_client, payload, url)
    return await _execute(client, payload, url)


async def _execute(
    client: httpx.AsyncClient, payload: HttpRequestPayload, url: str
) -> HttpRequestResult:
    headers = {"User-Agent": USER_AGENT, **(payload.headers or {})}
    content = None
    if payload.method not in BODYLESS_METHODS and payload.body:
        content = payload.body.encode("utf-8")

    try:
        request = client.build_request(payload.method, url, headers=headers, content=content)
    except httpx.InvalidURL as e:
        # Hosts the guard accepts but httpx cannot IDNA-encode
        logger.warning(f"{payload.method} {url} rejected by httpx: {e}")
        reason = UnsafeReason.INVALID_FORMAT
        raise UnsafeUrlError(
            url=url, reason=reason.value, message=f"{REASON_MESSAGES[reason]} ({url})"
        ) from e

    start = time.perf_counter()
    try:
        response, redirects = await send_guarded(
            client, request, HTTP_TOOL_MAX_REDIRECTS, stream=True
        )
        body, truncated = await _read_body(response)
    except httpx.TimeoutException as e:
        logger.warning(f"{payload.method} {url} timed out: {e!r}")
        raise UpstreamRequestError("Timeout", url=url) from e
    except httpx.HTTPError as e:
        logger.warning(f"{payload.method} {url} failed: {e!r}")
        raise UpstreamRequestError(str(e) or type(e).__name__, url=url) from e
    duration = round((time.perf_counter() - start) * 1000)

    logger.info(f"{payload.method} {url} -> {response.status_code} in {duration}ms")

    return HttpRequestResult(
        status=response.status_code,
        status_text=response.reason_phrase,
        headers=dict(response.headers),
        body=body,
        truncated=truncated,
        timing=RequestTiming(duration=duration),
        meta=ResponseMeta(url=str(response.url), redirected=redirects > 0),
    )
