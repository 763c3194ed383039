"""Pydantic models for API request/response."""

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from src.utils.security import UnsafeReason, validate_url_not_ssrf

BULK_CHECK_MAX_URLS = int(os.environ.get("BULK_CHECK_MAX_URLS", "500"))

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class UrlEvaluateRequest(BaseModel):
    """URL to run through the SSRF guard."""

    url: str = Field(max_length=8192)


class UrlVerdictResponse(BaseModel):
    """Guard verdict for a single URL."""

    url: str
    safe: bool
    reason: UnsafeReason | None = None
    message: str | None = None
    hostname: str | None = None


class HttpRequestPayload(BaseModel):
    """Request the HTTP tool should issue on the caller's behalf."""

    method: HttpMethod
    url: str = Field(min_length=1, max_length=8192)
    headers: dict[str, str] | None = None
    body: str | None = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        """Reject header injection via CR/LF and values httpx cannot send as ASCII."""
        if v is None:
            return v
        for name, value in v.items():
            if (
                not name.strip()
                or not (name + value).isascii()
                or any(c in name + value for c in "\r\n")
            ):
                raise ValueError(f"invalid header: {name!r}")
        return v


class RequestTiming(BaseModel):
    duration: int  # ms


class ResponseMeta(BaseModel):
    url: str
    redirected: bool = False


class HttpRequestResult(BaseModel):
    """Response captured by the HTTP tool."""

    success: bool = True
    status: int
    status_text: str
    headers: dict[str, str]
    body: str
    truncated: bool = False
    timing: RequestTiming
    meta: ResponseMeta


class BulkCheckRequest(BaseModel):
    """List of URLs (or bare hostnames) to check for reachability."""

    urls: list[str] = Field(min_length=1, max_length=BULK_CHECK_MAX_URLS)


class UrlCheckResult(BaseModel):
    """Reachability of one URL from a bulk check."""

    url: str
    status: Literal["up", "down", "error", "blocked"]
    status_code: int | None = None
    response_time: int | None = None  # ms
    error: str | None = None
    reason: UnsafeReason | None = None


class BulkCheckResponse(BaseModel):
    results: list[UrlCheckResult]
    total: int
    up: int
    down: int
    errors: int
    blocked: int

    @classmethod
    def from_results(cls, results: list[UrlCheckResult]) -> "BulkCheckResponse":
        counts = {s: 0 for s in ("up", "down", "error", "blocked")}
        for r in results:
            counts[r.status] += 1
        return cls(
            results=results,
            total=len(results),
            up=counts["up"],
            down=counts["down"],
            errors=counts["error"],
            blocked=counts["blocked"],
        )


class JobRequest(BulkCheckRequest):
    """Request to start a background bulk-check job."""

    callback_url: str | None = Field(default=None, max_length=8192)

    @field_validator("callback_url", mode="before")
    @classmethod
    def validate_callback_url(cls, v: object) -> object:
        """Prevent SSRF via the completion callback URL."""
        if v is None or v == "":
            return None
        return validate_url_not_ssrf(str(v))


class JobStatus(BaseModel):
    """Current status of a job."""

    id: str
    status: str
    urls_completed: int = 0
    urls_total: int = 0
    current_url: str | None = None
    results: list[UrlCheckResult] = Field(default_factory=list)
