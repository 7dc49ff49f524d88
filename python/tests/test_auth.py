"""Tests for gateway identity handling.

Tests cover:
- Viewer headers parsed into request.state.viewer
- Malformed viewer id / role rejected with E_UNAUTHENTICATED
- Anonymous callers reach routes that allow them
- Internal header enforcement when required (staging/prod)
- Admin-only routes
"""

import pytest
from fastapi.testclient import TestClient

from tests.factories import create_question, create_subject
from tests.helpers import admin_headers, viewer_headers
from tutor.app import create_app
from tutor.auth.middleware import GatewayAuthMiddleware

INTERNAL_SECRET = "test-internal-secret"


@pytest.fixture
def staging_client(fake_router, attachment_store):
    """Client whose outermost auth layer requires the internal header."""
    app = create_app(llm_router=fake_router, attachment_store=attachment_store)
    app.add_middleware(
        GatewayAuthMiddleware, requires_internal_header=True, internal_secret=INTERNAL_SECRET
    )
    with TestClient(app) as client:
        yield client


class TestViewerHeaders:
    def test_viewer_reaches_route(self, client):
        response = client.get("/usage", headers=viewer_headers(7))

        assert response.status_code == 200

    def test_missing_viewer_on_protected_route(self, client):
        response = client.get("/usage")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"

    @pytest.mark.parametrize("bad_id", ["abc", "7.5", ""])
    def test_malformed_viewer_id(self, client, bad_id):
        response = client.get("/usage", headers={"X-Viewer-Id": bad_id})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "E_UNAUTHENTICATED"

    def test_unknown_role_rejected(self, client):
        response = client.get("/usage", headers=viewer_headers(7, role="superuser"))

        assert response.status_code == 401

    def test_anonymous_question_readable_without_viewer(self, client, db_session):
        question = create_question(db_session, create_subject(db_session), user_id=None)

        response = client.get(f"/questions/{question.question_id}")

        assert response.status_code == 200
        assert response.json()["data"]["userId"] is None


class TestInternalHeader:
    def test_missing_internal_header(self, staging_client):
        response = staging_client.get("/usage", headers=viewer_headers(7))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "E_INTERNAL_ONLY"

    def test_wrong_internal_header_value(self, staging_client):
        response = staging_client.get(
            "/usage", headers={**viewer_headers(7), "X-Tutor-Internal": "wrong"}
        )

        assert response.status_code == 403

    def test_correct_internal_header(self, staging_client):
        response = staging_client.get(
            "/usage", headers={**viewer_headers(7), "X-Tutor-Internal": INTERNAL_SECRET}
        )

        assert response.status_code == 200

    def test_secret_not_configured_rejects(self, fake_router, attachment_store):
        app = create_app(llm_router=fake_router, attachment_store=attachment_store)
        app.add_middleware(
            GatewayAuthMiddleware, requires_internal_header=True, internal_secret=None
        )

        with TestClient(app) as client:
            response = client.get(
                "/usage", headers={**viewer_headers(7), "X-Tutor-Internal": "anything"}
            )

        assert response.status_code == 403


class TestAdminRoutes:
    def test_admin_list_requires_viewer(self, client):
        response = client.get("/admin/questions")

        assert response.status_code == 401

    def test_admin_list_forbidden_for_users(self, client):
        response = client.get("/admin/questions", headers=viewer_headers(7))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "E_FORBIDDEN"

    def test_admin_list_allowed_for_admins(self, client):
        response = client.get("/admin/questions", headers=admin_headers())

        assert response.status_code == 200
