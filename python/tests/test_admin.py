"""Tests for operator question routes and their service functions."""

from datetime import timedelta
from uuid import uuid4

import pytest

from tests.factories import add_message, create_question, create_subject
from tests.helpers import admin_headers
from tutor.db.models import MessageRole, QuestionStatus
from tutor.db.types import utcnow
from tutor.errors import InvalidRequestError, NotFoundError
from tutor.services import questions as question_service


@pytest.fixture
def catalog(db_session):
    """Five questions across two users and two subjects, oldest first."""
    biology = create_subject(db_session, name="Biology")
    physics = create_subject(db_session, name="Physics")
    start = utcnow() - timedelta(hours=1)
    rows = [
        create_question(
            db_session, biology, user_id=7, text="Explain photosynthesis", created_at=start
        ),
        create_question(
            db_session,
            physics,
            user_id=7,
            text="What is 100% efficiency?",
            status=QuestionStatus.answered,
            created_at=start + timedelta(minutes=1),
        ),
        create_question(
            db_session,
            biology,
            user_id=8,
            text="How do cells divide?",
            status=QuestionStatus.failed,
            created_at=start + timedelta(minutes=2),
        ),
        create_question(
            db_session,
            physics,
            user_id=8,
            text="Describe Newton's laws",
            created_at=start + timedelta(minutes=3),
        ),
        create_question(
            db_session,
            biology,
            user_id=9,
            text="Deleted question text",
            created_at=start + timedelta(minutes=4),
            deleted=True,
        ),
    ]
    return {"biology": biology, "physics": physics, "questions": rows}


class TestAdminListService:
    def test_lists_newest_first_without_deleted(self, db_session, catalog):
        result = question_service.admin_list_questions(db_session)

        expected = [q.question_id for q in reversed(catalog["questions"][:4])]
        assert [q.question_id for q in result.questions] == expected
        assert result.total == 4

    def test_include_deleted(self, db_session, catalog):
        result = question_service.admin_list_questions(db_session, include_deleted=True)

        assert result.total == 5
        assert result.questions[0].deleted_at is not None

    def test_filters_combine(self, db_session, catalog):
        result = question_service.admin_list_questions(
            db_session, status="pending", subject_id=catalog["physics"].id
        )

        assert [q.question_text for q in result.questions] == ["Describe Newton's laws"]

    def test_user_filter(self, db_session, catalog):
        result = question_service.admin_list_questions(db_session, user_id=8)

        assert {q.user_id for q in result.questions} == {8}
        assert result.total == 2

    def test_search_matches_text_or_subject(self, db_session, catalog):
        by_text = question_service.admin_list_questions(db_session, search="PHOTOSYNTHESIS")
        by_subject = question_service.admin_list_questions(db_session, search="physics")

        assert [q.question_text for q in by_text.questions] == ["Explain photosynthesis"]
        assert by_subject.total == 2

    def test_search_escapes_wildcards(self, db_session, catalog):
        result = question_service.admin_list_questions(db_session, search="100%")

        assert [q.question_text for q in result.questions] == ["What is 100% efficiency?"]

    def test_paging(self, db_session, catalog):
        first = question_service.admin_list_questions(db_session, page=1, limit=3)
        second = question_service.admin_list_questions(db_session, page=2, limit=3)

        assert len(first.questions) == 3
        assert len(second.questions) == 1
        assert first.total == second.total == 4

    @pytest.mark.parametrize(
        "kwargs", [{"status": "archived"}, {"page": 0}, {"limit": 0}, {"limit": 101}]
    )
    def test_invalid_parameters(self, db_session, kwargs):
        with pytest.raises(InvalidRequestError):
            question_service.admin_list_questions(db_session, **kwargs)


class TestAdminGetService:
    def test_get_includes_deleted_and_messages(self, db_session, catalog):
        deleted = catalog["questions"][4]
        answered = catalog["questions"][1]
        add_message(db_session, answered, MessageRole.user, "A follow-up")

        detail = question_service.admin_get_question(db_session, deleted.question_id)
        with_messages = question_service.admin_get_question(db_session, answered.question_id)

        assert detail.deleted_at is not None
        assert detail.messages == []
        assert [m.content for m in with_messages.messages] == ["A follow-up"]

    def test_get_unknown_is_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            question_service.admin_get_question(db_session, uuid4())


class TestAdminRoutes:
    def test_list_route_wire_format(self, client, catalog):
        response = client.get(
            "/admin/questions?userId=7&page=1&limit=1", headers=admin_headers()
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        assert data["limit"] == 1
        assert data["questions"][0]["questionText"] == "What is 100% efficiency?"

    def test_list_route_include_deleted(self, client, catalog):
        response = client.get("/admin/questions?includeDeleted=true", headers=admin_headers())

        assert response.json()["data"]["total"] == 5

    def test_list_route_rejects_bad_status(self, client):
        response = client.get("/admin/questions?status=archived", headers=admin_headers())

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"

    def test_get_route_returns_deleted_question(self, client, catalog):
        deleted = catalog["questions"][4]

        response = client.get(f"/admin/questions/{deleted.question_id}", headers=admin_headers())

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["deletedAt"] is not None
        assert data["messages"] == []
