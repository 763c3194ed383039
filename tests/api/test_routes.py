"""Tests for API routes in src/api/routes.py and the handlers in src/main.py."""

import httpx
import pytest
from unittest.mock import AsyncMock, patch
from fastapi.testclient import TestClient

from src.api.models import (
    HttpRequestResult,
    JobRequest,
    RequestTiming,
    ResponseMeta,
    UrlCheckResult,
)
from src.api.routes import client_ip
from src.exceptions import UpstreamRequestError
from src.jobs.manager import Job
from src.main import app

# NOTE: POST routes do not set an explicit status_code,
# so FastAPI returns 200 (not 201) by default.


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_job(
    job_id: str = "test-job-id",
    status: str = "pending",
    urls_completed: int = 0,
    urls_total: int = 2,
    current_url: str | None = None,
) -> Job:
    """Build a fake Job instance for testing routes."""
    return Job(
        id=job_id,
        request=JobRequest(urls=["https://example.com", "example.org"]),
        status=status,
        urls_completed=urls_completed,
        urls_total=urls_total,
        current_url=current_url,
    )


_JOB_BODY = {"urls": ["https://example.com", "example.org"]}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client() -> TestClient:
    """Return a synchronous TestClient for the FastAPI app."""
    return TestClient(app, raise_server_exceptions=False)


# ---------------------------------------------------------------------------
# URL evaluation
# ---------------------------------------------------------------------------


class TestEvaluateUrl:
    """POST /api/url/evaluate"""

    def test_safe_url(self, client: TestClient):
        response = client.post("/api/url/evaluate", json={"url": "https://Example.com/"})
        assert response.status_code == 200
        assert response.json() == {
            "url": "https://Example.com/",
            "safe": True,
            "reason": None,
            "message": None,
            "hostname": "example.com",
        }

    @pytest.mark.parametrize(
        "url, reason",
        [
            ("", "invalid_format"),
            ("not-a-url", "invalid_format"),
            ("file:///etc/passwd", "disallowed_scheme"),
            ("http://foo.local", "localhost_or_local_domain"),
            ("http://[::ffff:127.0.0.1]", "private_network"),
            ("http://0177.0.0.1", "ambiguous_ip_format"),
        ],
    )
    def test_unsafe_url_reports_reason(self, client: TestClient, url, reason):
        response = client.post("/api/url/evaluate", json={"url": url})
        assert response.status_code == 200
        data = response.json()
        assert data["safe"] is False
        assert data["reason"] == reason
        assert data["message"]

    def test_missing_url_is_422(self, client: TestClient):
        response = client.post("/api/url/evaluate", json={})
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# HTTP request tool
# ---------------------------------------------------------------------------


class TestHttpRequestTool:
    """POST /api/http-request"""

    @pytest.mark.parametrize(
        "url, reason",
        [
            ("http://127.0.0.1/admin", "private_network"),
            ("http://169.254.169.254/latest/meta-data/", "private_network"),
            ("http://localhost:8000/", "localhost_or_local_domain"),
            ("http://127.1/", "ambiguous_ip_format"),
            ("file:///etc/passwd", "disallowed_scheme"),
        ],
    )
    def test_unsafe_url_returns_400_without_fetching(self, client: TestClient, url, reason):
        with patch("src.tools.http_request.httpx.AsyncClient") as mock_client_cls:
            response = client.post("/api/http-request", json={"method": "GET", "url": url})

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Security Warning"
        assert data["reason"] == reason
        assert data["details"]
        mock_client_cls.assert_not_called()

    def test_success_passes_result_through(self, client: TestClient):
        result = HttpRequestResult(
            status=200,
            status_text="OK",
            headers={"content-type": "text/plain"},
            body="pong",
            timing=RequestTiming(duration=12),
            meta=ResponseMeta(url="https://example.com/ping"),
        )
        with patch(
            "src.api.routes.execute_request", new=AsyncMock(return_value=result)
        ) as mock_exec:
            response = client.post(
                "/api/http-request",
                json={"method": "get", "url": "https://example.com/ping"},
            )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["body"] == "pong"
        assert data["timing"] == {"duration": 12}
        assert mock_exec.await_args.args[0].method == "GET"

    def test_network_error_returns_502(self, client: TestClient):
        with patch(
            "src.api.routes.execute_request",
            new=AsyncMock(side_effect=UpstreamRequestError("connection refused")),
        ):
            response = client.post(
                "/api/http-request", json={"method": "GET", "url": "https://example.com"}
            )

        assert response.status_code == 502
        assert response.json() == {"error": "Network Error", "details": "connection refused"}

    def test_end_to_end_with_mock_transport(self, client: TestClient):
        """The real tool runs against a mocked upstream."""
        transport = httpx.MockTransport(lambda r: httpx.Response(200, text="hi"))
        real_client = httpx.AsyncClient

        def _client_factory(*args, **kwargs):
            return real_client(transport=transport, **kwargs)

        with patch("src.tools.http_request.httpx.AsyncClient", side_effect=_client_factory):
            response = client.post(
                "/api/http-request", json={"method": "GET", "url": "https://example.com"}
            )

        assert response.status_code == 200
        assert response.json()["body"] == "hi"

    def test_host_httpx_cannot_encode_is_400(self, client: TestClient):
        response = client.post(
            "/api/http-request", json={"method": "GET", "url": "http://\u0300a.com/"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Security Warning"
        assert response.json()["reason"] == "invalid_format"

    def test_invalid_method_is_422(self, client: TestClient):
        response = client.post(
            "/api/http-request", json={"method": "TRACE", "url": "https://example.com"}
        )
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Bulk check
# ---------------------------------------------------------------------------


class TestBulkCheck:
    """POST /api/bulk-check"""

    def test_returns_summary(self, client: TestClient):
        results = [
            UrlCheckResult(url="https://example.com", status="up", status_code=200),
            UrlCheckResult(url="http://10.0.0.1", status="blocked", reason="private_network"),
        ]
        with patch("src.api.routes.check_urls", new=AsyncMock(return_value=results)):
            response = client.post(
                "/api/bulk-check", json={"urls": ["https://example.com", "http://10.0.0.1"]}
            )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert data["up"] == 1
        assert data["blocked"] == 1
        assert data["results"][1]["reason"] == "private_network"

    def test_all_blank_urls_is_400(self, client: TestClient):
        response = client.post("/api/bulk-check", json={"urls": ["", "  "]})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_empty_list_is_422(self, client: TestClient):
        response = client.post("/api/bulk-check", json={"urls": []})
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class TestCreateJob:
    """POST /api/jobs"""

    def test_create_job_returns_pending_status(self, client: TestClient):
        fake_job = _make_job(job_id="new-uuid-123")
        with patch(
            "src.api.routes.job_manager.create_job", new=AsyncMock(return_value=fake_job)
        ):
            response = client.post("/api/jobs", json=_JOB_BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "new-uuid-123"
        assert data["status"] == "pending"
        assert data["urls_total"] == 2

    def test_unsafe_callback_url_is_422(self, client: TestClient):
        response = client.post(
            "/api/jobs", json={**_JOB_BODY, "callback_url": "http://10.1.1.1/hook"}
        )
        assert response.status_code == 422

    def test_returns_429_when_job_limit_reached(self, client: TestClient):
        with patch("src.api.routes.job_manager.active_job_count", return_value=999):
            response = client.post("/api/jobs", json=_JOB_BODY)
        assert response.status_code == 429
        assert "detail" in response.json()


class TestJobLookup:
    """GET /api/jobs/{id}/status, POST /api/jobs/{id}/cancel, GET /api/jobs/{id}/events"""

    def test_status_unknown_job_is_404(self, client: TestClient):
        response = client.get("/api/jobs/does-not-exist/status")
        assert response.status_code == 404
        assert response.json()["detail"] == "Job not found"

    def test_cancel_unknown_job_is_404(self, client: TestClient):
        response = client.post("/api/jobs/does-not-exist/cancel")
        assert response.status_code == 404

    def test_events_unknown_job_is_404(self, client: TestClient):
        response = client.get("/api/jobs/does-not-exist/events")
        assert response.status_code == 404

    def test_status_includes_results(self, client: TestClient):
        job = _make_job(status="running", urls_completed=1, current_url="https://example.com")
        job.results.append(UrlCheckResult(url="https://example.com", status="up", status_code=200))
        with patch("src.api.routes.job_manager.get_job", return_value=job):
            response = client.get(f"/api/jobs/{job.id}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["urls_completed"] == 1
        assert data["current_url"] == "https://example.com"
        assert data["results"][0]["status"] == "up"

    def test_cancel_returns_cancelled_status(self, client: TestClient):
        job = _make_job(status="cancelled")
        with patch(
            "src.api.routes.job_manager.cancel_job", new=AsyncMock(return_value=job)
        ):
            response = client.post(f"/api/jobs/{job.id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"


# ---------------------------------------------------------------------------
# Health, middleware, rate limiting
# ---------------------------------------------------------------------------


class TestHealthReady:
    """GET /api/health/ready"""

    def test_health_ready(self, client: TestClient):
        response = client.get("/api/health/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["ready"] is True
        assert data["checks"]["ssrf_guard"]["status"] == "ok"

    def test_security_headers_present(self, client: TestClient):
        response = client.get("/api/health/ready")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "X-API-Version" in response.headers


class TestRateLimit:
    @pytest.fixture
    def trust_proxy(self, monkeypatch):
        monkeypatch.setattr("src.api.routes.TRUST_PROXY_HEADERS", True)

    def test_rate_limit_returns_429(self, client: TestClient):
        statuses = [
            client.post("/api/url/evaluate", json={"url": "https://example.com"}).status_code
            for _ in range(31)
        ]
        assert statuses[:30] == [200] * 30
        assert statuses[30] == 429

    def test_client_ip_ignores_proxy_headers_by_default(self):
        request = _fake_request({"cf-connecting-ip": "203.0.113.7", "x-forwarded-for": "198.51.100.1"})
        assert client_ip(request) == "192.0.2.10"

    def test_rotating_forwarded_header_does_not_reset_limit(self, client: TestClient):
        statuses = [
            client.post(
                "/api/url/evaluate",
                json={"url": "https://example.com"},
                headers={"X-Forwarded-For": f"198.51.100.{i}"},
            ).status_code
            for i in range(31)
        ]
        assert statuses[30] == 429

    def test_client_ip_prefers_cloudflare_header(self, trust_proxy):
        request = _fake_request({"cf-connecting-ip": "203.0.113.7", "x-forwarded-for": "198.51.100.1"})
        assert client_ip(request) == "203.0.113.7"

    def test_client_ip_uses_first_forwarded_hop(self, trust_proxy):
        request = _fake_request({"x-forwarded-for": "198.51.100.1, 10.0.0.1"})
        assert client_ip(request) == "198.51.100.1"

    def test_client_ip_falls_back_to_peer(self, trust_proxy):
        request = _fake_request({})
        assert client_ip(request) == "192.0.2.10"


def _fake_request(headers: dict[str, str]):
    from starlette.requests import Request

    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.encode(), v.encode()) for k, v in headers.items()],
        "client": ("192.0.2.10", 12345),
    }
    return Request(scope)
