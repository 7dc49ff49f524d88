"""Tests for the health endpoint.

The health endpoint is a liveness check that:
- Does not require a viewer or the internal header
- Does not touch the database, broker, or providers
- Always returns 200 if the process is running
"""

from fastapi.testclient import TestClient

from tutor.app import create_app
from tutor.auth.middleware import GatewayAuthMiddleware


class TestHealthEndpoint:
    """Tests for GET /health"""

    def test_health_returns_envelope(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {"data": {"status": "ok"}}

    def test_health_skips_internal_header(self, fake_router, attachment_store):
        app = create_app(llm_router=fake_router, attachment_store=attachment_store)
        app.add_middleware(
            GatewayAuthMiddleware, requires_internal_header=True, internal_secret="s3cret"
        )

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert client.get("/usage").status_code == 403
