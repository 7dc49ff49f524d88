"""Tests for question admission, reads, and the terminal transition.

Tests cover:
- Admission validation (text bounds, attachment allow-list, size, sniffing)
- Quota rejection leaves no question behind
- Attachments are stored, recorded, and cleaned up on failure
- Dispatch happens once, after commit
- Visibility rules for owners, strangers and anonymous questions
- transition_if_pending writes at most once
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from tests.factories import create_ai_model, create_question, create_subject, create_usage
from tests.helpers import PDF_BYTES, PNG_BYTES
from tests.support.recording import RecordingDispatcher
from tutor.db.models import Question, QuestionStatus
from tutor.db.session import transaction
from tutor.errors import (
    ApiError,
    ApiErrorCode,
    FileRejectedError,
    InvalidRequestError,
    NotFoundError,
    QuotaExceededError,
)
from tutor.services import questions as question_service
from tutor.services.jobs import InlineJobDispatcher, JobKind
from tutor.services.questions import UploadedFile
from tutor.storage import FakeAttachmentStore, StorageError

USER_ID = 7


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def store() -> FakeAttachmentStore:
    return FakeAttachmentStore()


@pytest.fixture
def ask(db_session, ledger, store, dispatcher):
    def _ask(subject_id, text="Explain photosynthesis", files=None, user_id=USER_ID, **kwargs):
        return question_service.ask_question(
            db_session,
            ledger=ledger,
            store=store,
            dispatcher=dispatcher,
            user_id=user_id,
            subject_id=subject_id,
            text=text,
            files=files,
            **kwargs,
        )

    return _ask


def _question_count(db) -> int:
    db.expire_all()
    return db.execute(select(func.count()).select_from(Question)).scalar_one()


class TestAskQuestion:
    def test_admits_pending_question_and_dispatches(self, db_session, ask, dispatcher):
        subject = create_subject(db_session)
        model = create_ai_model(db_session)

        result = ask(subject.id, text="  Explain photosynthesis  ", request_id="req-1")

        assert result.status == QuestionStatus.pending.value
        assert result.question_text == "Explain photosynthesis"
        assert result.answer_text is None and result.error_message is None
        assert result.ai_model_id == model.id
        assert result.subject_name == "Biology"
        assert len(dispatcher.jobs) == 1
        job = dispatcher.jobs[0]
        assert job.kind == JobKind.INITIAL_QUESTION
        assert job.question_id == result.question_id
        assert job.job_id == f"question:{result.question_id}"
        assert job.request_id == "req-1"

    def test_admission_does_not_wait_for_inline_job(self, db_session, ledger, store):
        subject = create_subject(db_session)
        create_ai_model(db_session)
        release = threading.Event()
        finished = []

        def blocked_job(job):
            release.wait(timeout=5)
            finished.append(job)

        with ThreadPoolExecutor(max_workers=1) as executor:
            result = question_service.ask_question(
                db_session,
                ledger=ledger,
                store=store,
                dispatcher=InlineJobDispatcher(blocked_job, executor),
                user_id=USER_ID,
                subject_id=subject.id,
                text="Explain photosynthesis",
            )

            assert result.status == QuestionStatus.pending.value
            assert finished == []
            release.set()

        assert [job.question_id for job in finished] == [result.question_id]

    @pytest.mark.parametrize("text", [None, "", "   ", "too short"])
    def test_rejects_blank_or_short_text(self, db_session, ask, dispatcher, text):
        subject = create_subject(db_session)

        with pytest.raises(InvalidRequestError) as exc_info:
            ask(subject.id, text=text)

        assert exc_info.value.code == ApiErrorCode.E_QUESTION_INVALID
        assert dispatcher.jobs == []
        assert _question_count(db_session) == 0

    def test_rejects_overlong_text(self, db_session, ask, settings):
        subject = create_subject(db_session)

        with pytest.raises(InvalidRequestError) as exc_info:
            ask(subject.id, text="x" * (settings.question_max_chars + 1))

        assert exc_info.value.code == ApiErrorCode.E_QUESTION_INVALID

    def test_unknown_or_deleted_subject_is_not_found(self, db_session, ask):
        deleted = create_subject(db_session, name="Retired", deleted=True)

        for subject_id in (deleted.id, 9999):
            with pytest.raises(NotFoundError) as exc_info:
                ask(subject_id)
            assert exc_info.value.code == ApiErrorCode.E_SUBJECT_NOT_FOUND

    def test_anonymous_rejected_unless_enabled(self, db_session, ask, settings, dispatcher):
        subject = create_subject(db_session)

        with pytest.raises(ApiError) as exc_info:
            ask(subject.id, user_id=None)
        assert exc_info.value.code == ApiErrorCode.E_UNAUTHENTICATED

        allowing = settings.model_copy(update={"allow_anonymous_questions": True})
        result = ask(subject.id, user_id=None, settings=allowing)
        assert result.user_id is None
        assert len(dispatcher.jobs) == 1

    def test_quota_exceeded_creates_nothing(self, db_session, ask, settings, dispatcher):
        subject = create_subject(db_session)
        create_usage(db_session, USER_ID, questions_used=settings.free_tier_max_questions)

        with pytest.raises(QuotaExceededError):
            ask(subject.id)

        assert _question_count(db_session) == 0
        assert dispatcher.jobs == []
        assert question_service.get_user_questions(db_session, USER_ID) == []


class TestAttachments:
    def test_attachments_stored_and_recorded(self, db_session, ask, store):
        subject = create_subject(db_session)
        files = [
            UploadedFile("diagram.png", "image/png", PNG_BYTES),
            UploadedFile("notes.pdf", "application/pdf", PDF_BYTES),
        ]

        result = ask(subject.id, files=files)

        assert [a.name for a in result.file_attachments] == ["diagram.png", "notes.pdf"]
        assert [a.mime_type for a in result.file_attachments] == ["image/png", "application/pdf"]
        assert sorted(store.keys) == sorted(a.access_key for a in result.file_attachments)
        assert store.get_object(result.file_attachments[0].access_key) == PNG_BYTES

    def test_disallowed_type_names_the_file(self, db_session, ask, store):
        subject = create_subject(db_session)
        files = [UploadedFile("setup.exe", "application/x-msdownload", b"MZ\x90\x00")]

        with pytest.raises(FileRejectedError) as exc_info:
            ask(subject.id, files=files)

        assert exc_info.value.code == ApiErrorCode.E_FILE_REJECTED
        assert exc_info.value.filename == "setup.exe"
        assert "setup.exe" in exc_info.value.message
        assert store.keys == []

    def test_oversized_file_rejected(self, db_session, ask, settings):
        subject = create_subject(db_session)
        tight = settings.model_copy(update={"attachment_max_bytes": 16})
        files = [UploadedFile("big.png", "image/png", PNG_BYTES)]

        with pytest.raises(FileRejectedError) as exc_info:
            ask(subject.id, files=files, settings=tight)

        assert exc_info.value.reason == "too_large"

    def test_content_must_match_declared_type(self, db_session, ask):
        subject = create_subject(db_session)
        files = [UploadedFile("fake.png", "image/png", b"GIF89a" + b"\x00" * 16)]

        with pytest.raises(FileRejectedError) as exc_info:
            ask(subject.id, files=files)

        assert exc_info.value.reason == "content"

    def test_too_many_files(self, db_session, ask, settings):
        subject = create_subject(db_session)
        files = [
            UploadedFile(f"f{i}.png", "image/png", PNG_BYTES)
            for i in range(settings.attachment_max_files + 1)
        ]

        with pytest.raises(InvalidRequestError) as exc_info:
            ask(subject.id, files=files)

        assert exc_info.value.code == ApiErrorCode.E_INVALID_REQUEST

    def test_upload_quota_exceeded_discards_nothing_stored(self, db_session, ask, store, settings):
        subject = create_subject(db_session)
        create_usage(db_session, USER_ID, file_uploads_used=settings.free_tier_max_file_uploads)

        with pytest.raises(QuotaExceededError):
            ask(subject.id, files=[UploadedFile("a.png", "image/png", PNG_BYTES)])

        assert store.keys == []
        assert _question_count(db_session) == 0

    def test_storage_failure_discards_partial_uploads(self, db_session, ledger, dispatcher):
        subject = create_subject(db_session)

        class FailingSecondStore(FakeAttachmentStore):
            def store(self, filename, content, mime_type):
                if self.keys:
                    raise StorageError("bucket unavailable", "E_STORAGE_ERROR")
                return super().store(filename, content, mime_type)

        store = FailingSecondStore()
        files = [
            UploadedFile("a.png", "image/png", PNG_BYTES),
            UploadedFile("b.png", "image/png", PNG_BYTES),
        ]

        with pytest.raises(ApiError) as exc_info:
            question_service.ask_question(
                db_session,
                ledger=ledger,
                store=store,
                dispatcher=dispatcher,
                user_id=USER_ID,
                subject_id=subject.id,
                text="Explain photosynthesis",
                files=files,
            )

        assert exc_info.value.code == ApiErrorCode.E_STORAGE_ERROR
        assert store.keys == []
        assert _question_count(db_session) == 0


class TestReads:
    def test_owner_reads_question(self, db_session):
        subject = create_subject(db_session)
        question = create_question(db_session, subject, user_id=USER_ID)

        result = question_service.get_question(db_session, question.question_id, USER_ID)

        assert result.question_id == question.question_id

    def test_other_user_gets_not_found(self, db_session):
        subject = create_subject(db_session)
        question = create_question(db_session, subject, user_id=USER_ID)

        for viewer in (8, None):
            with pytest.raises(NotFoundError) as exc_info:
                question_service.get_question(db_session, question.question_id, viewer)
            assert exc_info.value.code == ApiErrorCode.E_QUESTION_NOT_FOUND

    def test_anonymous_question_readable_by_id(self, db_session):
        subject = create_subject(db_session)
        question = create_question(db_session, subject, user_id=None)

        result = question_service.get_question(db_session, question.question_id, None)

        assert result.user_id is None

    def test_soft_deleted_is_not_found(self, db_session):
        subject = create_subject(db_session)
        question = create_question(db_session, subject, user_id=USER_ID, deleted=True)

        with pytest.raises(NotFoundError):
            question_service.get_question(db_session, question.question_id, USER_ID)

    def test_unknown_id_is_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            question_service.get_question(db_session, uuid4(), USER_ID)

    def test_user_questions_newest_first_and_stats(self, db_session):
        subject = create_subject(db_session)
        first = create_question(db_session, subject, status=QuestionStatus.answered)
        second = create_question(db_session, subject, status=QuestionStatus.failed)
        third = create_question(db_session, subject)
        create_question(db_session, subject, user_id=8)
        create_question(db_session, subject, deleted=True)

        questions = question_service.get_user_questions(db_session, USER_ID)
        stats = question_service.get_question_stats(db_session, USER_ID)

        assert [q.question_id for q in questions] == [
            third.question_id,
            second.question_id,
            first.question_id,
        ]
        assert (stats.total, stats.answered, stats.pending, stats.failed) == (3, 1, 1, 1)

    def test_attachment_url_only_for_known_keys(self, db_session, ask, store):
        subject = create_subject(db_session)
        result = ask(subject.id, files=[UploadedFile("a.png", "image/png", PNG_BYTES)])
        key = result.file_attachments[0].access_key

        resolved = question_service.get_attachment_url(
            db_session, store, result.question_id, key, USER_ID
        )
        assert resolved.url.startswith("https://fake-storage.test/")

        with pytest.raises(NotFoundError) as exc_info:
            question_service.get_attachment_url(
                db_session, store, result.question_id, "attachments/other/file.png", USER_ID
            )
        assert exc_info.value.code == ApiErrorCode.E_ATTACHMENT_NOT_FOUND


class TestTransition:
    def test_transition_happens_once(self, db_session):
        subject = create_subject(db_session)
        question = create_question(db_session, subject)

        with transaction(db_session):
            first = question_service.transition_if_pending(
                db_session,
                question.id,
                QuestionStatus.answered,
                answer_text="first answer",
                processing_time_ms=12,
            )
        with transaction(db_session):
            second = question_service.transition_if_pending(
                db_session,
                question.id,
                QuestionStatus.failed,
                error_message="late failure",
            )

        db_session.expire_all()
        stored = db_session.get(Question, question.id)
        assert (first, second) == (True, False)
        assert stored.status == QuestionStatus.answered.value
        assert stored.answer_text == "first answer"
        assert stored.error_message is None

    def test_terminal_payload_must_match_status(self, db_session):
        with pytest.raises(ValueError):
            question_service.transition_if_pending(db_session, 1, QuestionStatus.answered)
        with pytest.raises(ValueError):
            question_service.transition_if_pending(db_session, 1, QuestionStatus.failed)
        with pytest.raises(ValueError):
            question_service.transition_if_pending(
                db_session, 1, QuestionStatus.pending, answer_text="x"
            )
