"""Integration tests for question and conversation routes.

Tests cover:
- POST /questions admits and returns pending; the answer lands asynchronously
- Wire format is camelCase inside the {"data": ...} envelope
- Error envelopes for validation, quota, visibility and conversation state
- Follow-ups through POST /questions/{id}/messages
- Attachment upload and URL resolution
- GET /questions, /questions/stats and /usage for the caller

Answer jobs run inline (JOB_DISPATCH_MODE=inline) against the scripted
router on a synchronous executor, so the job has finished by the time POST
returns. TestInlineThreadPool uses the real lifespan-owned pool instead. The "parked"
client records jobs instead of running them, leaving work in flight.
"""

from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from tests.factories import create_ai_model, create_question, create_subject, create_usage
from tests.helpers import PNG_BYTES, question_form, viewer_headers
from tests.support.fake_llm import make_response
from tests.support.recording import RecordingDispatcher
from tutor.app import add_request_id_middleware, create_app
from tutor.db.models import Question, QuestionStatus
from tutor.services.jobs import AnswerJob, JobKind
from tutor.services.llm import LLMError, LLMErrorClass
from tutor.services.llm.errors import ERROR_CLASS_TO_MESSAGE

USER_ID = 7


@pytest.fixture
def subject(db_session):
    create_ai_model(db_session)
    return create_subject(db_session)


@pytest.fixture
def recorder() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def parked_client(session_factory, fake_router, attachment_store, recorder):
    app = create_app(
        llm_router=fake_router, attachment_store=attachment_store, dispatcher=recorder
    )
    add_request_id_middleware(app, log_requests=False)
    with TestClient(app) as client:
        yield client


def _ask(client, subject_id, text="Explain photosynthesis", user_id=USER_ID, files=None):
    return client.post(
        "/questions",
        data=question_form(subject_id, text),
        files=files,
        headers=viewer_headers(user_id),
    )


def _error(response) -> dict:
    return response.json()["error"]


class TestAskQuestion:
    def test_post_returns_pending_then_answer_is_readable(self, client, subject, fake_router):
        fake_router.then(make_response("Light becomes sugar."))

        response = _ask(client, subject.id)

        assert response.status_code == 201
        created = response.json()["data"]
        assert created["status"] == "pending"
        assert created["subjectId"] == subject.id
        assert created["subjectName"] == "Biology"
        assert created["questionText"] == "Explain photosynthesis"
        assert created["answerText"] is None
        assert created["fileAttachments"] == []
        assert "id" not in created

        fetched = client.get(f"/questions/{created['questionId']}", headers=viewer_headers(USER_ID))
        assert fetched.status_code == 200
        data = fetched.json()["data"]
        assert data["status"] == "answered"
        assert data["answerText"] == "Light becomes sugar."
        assert data["errorMessage"] is None
        assert data["processingTimeMs"] > 0
        assert data["followUpInFlight"] is False

    def test_provider_failure_surfaces_as_failed_question(
        self, client, subject, fake_router, settings
    ):
        fake_router.then(
            *[LLMError(LLMErrorClass.PROVIDER_DOWN, "503")] * settings.inference_max_attempts
        )

        created = _ask(client, subject.id).json()["data"]
        data = client.get(
            f"/questions/{created['questionId']}", headers=viewer_headers(USER_ID)
        ).json()["data"]

        assert data["status"] == "failed"
        assert data["answerText"] is None
        assert data["errorMessage"] == ERROR_CLASS_TO_MESSAGE[LLMErrorClass.PROVIDER_DOWN]

    def test_failed_question_stays_failed_after_redelivery(
        self, client, subject, fake_router, settings
    ):
        fake_router.then(
            *[LLMError(LLMErrorClass.PROVIDER_DOWN, "503")] * settings.inference_max_attempts
        )
        created = _ask(client, subject.id).json()["data"]
        url = f"/questions/{created['questionId']}"
        first = client.get(url, headers=viewer_headers(USER_ID)).json()["data"]
        calls_before = len(fake_router.calls)

        # The router now answers successfully; a redelivered job must not use it
        redelivered = AnswerJob(
            kind=JobKind.INITIAL_QUESTION, question_id=UUID(created["questionId"])
        )
        assert client.app.state.dispatcher.dispatch(redelivered) is True
        second = client.get(url, headers=viewer_headers(USER_ID)).json()["data"]

        assert first["status"] == second["status"] == "failed"
        assert second["errorMessage"] == first["errorMessage"]
        assert second["answerText"] is None
        assert len(fake_router.calls) == calls_before

    def test_short_question_rejected(self, client, subject):
        response = _ask(client, subject.id, text="why?")

        assert response.status_code == 400
        error = _error(response)
        assert error["code"] == "E_QUESTION_INVALID"
        assert error["request_id"] == response.headers["X-Request-ID"]

    def test_missing_subject_field_is_invalid_request(self, client):
        response = client.post(
            "/questions",
            data={"question": "Explain photosynthesis"},
            headers=viewer_headers(USER_ID),
        )

        assert response.status_code == 400
        assert _error(response)["code"] == "E_INVALID_REQUEST"

    def test_unknown_subject_is_404(self, client, subject):
        response = _ask(client, subject.id + 1000)

        assert response.status_code == 404
        assert _error(response)["code"] == "E_SUBJECT_NOT_FOUND"

    def test_anonymous_rejected_by_default(self, client, subject):
        response = client.post("/questions", data=question_form(subject.id))

        assert response.status_code == 401
        assert _error(response)["code"] == "E_UNAUTHENTICATED"

    def test_rejected_file_names_the_file(self, client, subject):
        response = _ask(
            client,
            subject.id,
            files=[("files", ("payload.exe", b"MZ\x90\x00", "application/x-msdownload"))],
        )

        assert response.status_code == 400
        error = _error(response)
        assert error["code"] == "E_FILE_REJECTED"
        assert "payload.exe" in error["message"]

    def test_quota_exceeded_is_429(self, client, db_session, subject, settings):
        create_usage(db_session, USER_ID, questions_used=settings.free_tier_max_questions)

        response = _ask(client, subject.id)

        assert response.status_code == 429
        assert _error(response)["code"] == "E_QUOTA_EXCEEDED"
        listed = client.get("/questions", headers=viewer_headers(USER_ID)).json()["data"]
        assert listed == []

    def test_attachment_upload_and_url(self, client, subject, attachment_store):
        response = _ask(
            client, subject.id, files=[("files", ("diagram.png", PNG_BYTES, "image/png"))]
        )

        created = response.json()["data"]
        attachment = created["fileAttachments"][0]
        assert attachment["name"] == "diagram.png"
        assert attachment["mimeType"] == "image/png"
        assert attachment["size"] == len(PNG_BYTES)
        assert attachment_store.get_object(attachment["accessKey"]) == PNG_BYTES

        resolved = client.get(
            f"/questions/{created['questionId']}/attachments/{attachment['accessKey']}",
            headers=viewer_headers(USER_ID),
        )
        assert resolved.status_code == 200
        assert resolved.json()["data"]["url"].startswith("https://fake-storage.test/")


class TestInlineThreadPool:
    def test_shutdown_drains_pending_answer_jobs(
        self, session_factory, subject, fake_router, attachment_store
    ):
        fake_router.then(make_response("Light becomes sugar."))
        app = create_app(llm_router=fake_router, attachment_store=attachment_store)

        with TestClient(app) as client:
            created = _ask(client, subject.id)
            assert created.status_code == 201
            assert created.json()["data"]["status"] == "pending"

        with session_factory() as db:
            question = db.scalars(
                select(Question).where(
                    Question.question_id == UUID(created.json()["data"]["questionId"])
                )
            ).one()
            assert question.status == QuestionStatus.answered.value
            assert question.answer_text == "Light becomes sugar."


class TestReadQuestions:
    def test_other_user_gets_404(self, client, subject):
        created = _ask(client, subject.id).json()["data"]

        response = client.get(f"/questions/{created['questionId']}", headers=viewer_headers(8))

        assert response.status_code == 404
        assert _error(response)["code"] == "E_QUESTION_NOT_FOUND"

    def test_unknown_and_malformed_ids(self, client):
        missing = client.get(f"/questions/{uuid4()}", headers=viewer_headers(USER_ID))
        assert missing.status_code == 404
        response = client.get("/questions/not-a-uuid", headers=viewer_headers(USER_ID))
        assert response.status_code == 400
        assert _error(response)["code"] == "E_INVALID_REQUEST"

    def test_unknown_include_rejected(self, client, subject):
        created = _ask(client, subject.id).json()["data"]

        response = client.get(
            f"/questions/{created['questionId']}?include=everything",
            headers=viewer_headers(USER_ID),
        )

        assert response.status_code == 400

    def test_list_and_stats(self, client, db_session, subject):
        create_question(db_session, subject, status=QuestionStatus.failed)
        _ask(client, subject.id)

        listed = client.get("/questions?mine=true", headers=viewer_headers(USER_ID))
        stats = client.get("/questions/stats", headers=viewer_headers(USER_ID))

        assert [q["status"] for q in listed.json()["data"]] == ["answered", "failed"]
        assert stats.json()["data"] == {"total": 2, "answered": 1, "pending": 0, "failed": 1}

    def test_list_requires_viewer(self, client):
        response = client.get("/questions")

        assert response.status_code == 401

    def test_mine_false_rejected(self, client):
        response = client.get("/questions?mine=false", headers=viewer_headers(USER_ID))

        assert response.status_code == 400

    def test_usage_reflects_admission(self, client, subject, settings):
        _ask(client, subject.id)

        usage = client.get("/usage", headers=viewer_headers(USER_ID)).json()["data"]

        assert usage["plan"] == "free"
        assert usage["questionsUsed"] == 1
        assert usage["questionsLimit"] == settings.free_tier_max_questions
        assert usage["creditsConsumed"] == pytest.approx(1.0)


class TestFollowUps:
    def test_follow_up_round_trip(self, client, subject, fake_router):
        created = _ask(client, subject.id).json()["data"]
        question_id = created["questionId"]
        fake_router.then(make_response("For example, a sunflower."))

        response = client.post(
            f"/questions/{question_id}/messages",
            json={"message": "Can you give an example?"},
            headers=viewer_headers(USER_ID),
        )

        assert response.status_code == 201
        sent = response.json()["data"]
        assert sent["role"] == "user"
        assert sent["questionId"] == question_id

        detail = client.get(
            f"/questions/{question_id}?include=messages", headers=viewer_headers(USER_ID)
        ).json()["data"]
        assert [(m["role"], m["content"]) for m in detail["messages"]] == [
            ("user", "Can you give an example?"),
            ("assistant", "For example, a sunflower."),
        ]
        assert detail["followUpInFlight"] is False

        listed = client.get(
            f"/questions/{question_id}/messages", headers=viewer_headers(USER_ID)
        ).json()["data"]
        assert [m["role"] for m in listed] == ["user", "assistant"]

    def test_follow_up_on_pending_question_is_409(self, parked_client, subject):
        created = _ask(parked_client, subject.id).json()["data"]

        response = parked_client.post(
            f"/questions/{created['questionId']}/messages",
            json={"message": "Hello?"},
            headers=viewer_headers(USER_ID),
        )

        assert response.status_code == 409
        assert _error(response)["code"] == "E_CONVERSATION_NOT_READY"

    def test_second_follow_up_while_in_flight_is_409(
        self, parked_client, db_session, subject, recorder
    ):
        question = create_question(db_session, subject, status=QuestionStatus.answered)
        url = f"/questions/{question.question_id}/messages"

        headers = viewer_headers(USER_ID)
        first = parked_client.post(url, json={"message": "First"}, headers=headers)
        second = parked_client.post(url, json={"message": "Second"}, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 409
        assert _error(second)["code"] == "E_CONVERSATION_BUSY"
        assert len(recorder.jobs) == 1
        detail = parked_client.get(
            f"/questions/{question.question_id}", headers=viewer_headers(USER_ID)
        ).json()["data"]
        assert detail["followUpInFlight"] is True

    def test_blank_follow_up_rejected(self, client, db_session, subject):
        question = create_question(db_session, subject, status=QuestionStatus.answered)

        response = client.post(
            f"/questions/{question.question_id}/messages",
            json={"message": "   "},
            headers=viewer_headers(USER_ID),
        )

        assert response.status_code == 400
        assert _error(response)["code"] == "E_MESSAGE_INVALID"

    def test_malformed_body_rejected(self, client, db_session, subject):
        question = create_question(db_session, subject, status=QuestionStatus.answered)

        response = client.post(
            f"/questions/{question.question_id}/messages",
            content=b"{not json",
            headers={**viewer_headers(USER_ID), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert _error(response)["code"] == "E_INVALID_REQUEST"

    def test_follow_up_requires_viewer(self, client, db_session, subject):
        question = create_question(db_session, subject, status=QuestionStatus.answered)

        response = client.post(
            f"/questions/{question.question_id}/messages", json={"message": "Hi there"}
        )

        assert response.status_code == 401
