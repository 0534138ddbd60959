"""Document service: upload validation, ownership, paid analysis and analytics."""

from datetime import datetime, timedelta, timezone

import pytest

from docshield.service.credits import CreditService
from docshield.service.documents import (
    DocumentService,
    common_words,
    jaccard_similarity,
    word_set,
)
from docshield.service.errors import (
    InsufficientCreditsError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from docshield.storage.memory import MemoryStore


class RecordingAnalyzer:
    def __init__(self, fail=False):
        self.fail = fail
        self.seen = []

    async def analyze(self, content, *, user_id=None):
        self.seen.append(content)
        if self.fail:
            raise UpstreamUnavailableError("Failed to analyze document")
        return "analysis"

    async def close(self):
        return None


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="documents-test-key")


@pytest.fixture
def analyzer():
    return RecordingAnalyzer()


@pytest.fixture
def documents(store, analyzer):
    return DocumentService(
        store, CreditService(store, daily_limit=20), analyzer, max_document_bytes=64
    )


@pytest.fixture
def user(store):
    return store.create_user("writer@example.com", "Writer", is_verified=True)


def test_common_words_skips_short_and_stop_words():
    words = common_words(["The data, the DATA and more data!", "more words here"])

    assert words[0] == {"word": "data", "frequency": 3}
    assert {"word": "more", "frequency": 2} in words
    assert all(len(w["word"]) > 3 for w in words)


def test_common_words_limit():
    text = " ".join(f"word{i}" for i in range(20))
    assert len(common_words([text], limit=5)) == 5


class TestUpload:
    """Input checks before anything is stored."""

    @pytest.mark.parametrize(
        "title,content,file_type",
        [
            ("", "body", "text/plain"),
            ("Title", "   ", "text/plain"),
            ("Title", "body", "application/pdf"),
            ("Title", "x" * 65, "text/plain"),
        ],
    )
    def test_rejected(self, documents, store, user, title, content, file_type):
        with pytest.raises(ValidationError):
            documents.upload(user.id, title, content, file_type=file_type)
        assert store.count_documents() == 0

    def test_upload_records_activity(self, documents, store, user):
        doc = documents.upload(user.id, " Notes ", "plain text")

        assert doc.title == "Notes"
        assert doc.status == "uploaded"
        assert store.list_activities(user.id)[0].action == "DOCUMENT_UPLOAD"


class TestOwnership:
    """Other users' documents are indistinguishable from missing ones."""

    def test_foreign_document(self, documents, store, user):
        other = store.create_user("other@example.com", "Other")
        doc = documents.upload(user.id, "Mine", "secret notes")

        with pytest.raises(NotFoundError):
            documents.view(other.id, doc.id)
        with pytest.raises(NotFoundError):
            documents.delete(other.id, doc.id)
        assert store.get_document(doc.id) is not None


class TestAnalyze:
    """One credit per analysis, refunded on failure."""

    async def test_success(self, documents, store, analyzer, user):
        doc = documents.upload(user.id, "Notes", "plain text")

        updated, remaining = await documents.analyze(user.id, doc.id)

        assert remaining == 19
        assert updated.status == "completed"
        assert analyzer.seen == ["plain text"]
        assert store.get_user(user.id).total_scans == 1

    async def test_failure_marks_document(self, store, user):
        service = DocumentService(
            store, CreditService(store, daily_limit=20), RecordingAnalyzer(fail=True)
        )
        doc = service.upload(user.id, "Notes", "plain text")

        with pytest.raises(UpstreamUnavailableError):
            await service.analyze(user.id, doc.id)

        assert store.get_document(doc.id).status == "failed"
        assert store.get_user(user.id).credits == 20

    async def test_scan_without_credits_stores_nothing(self, documents, store, analyzer, user):
        store.set_credits(user.id, 0)

        with pytest.raises(InsufficientCreditsError):
            await documents.scan(user.id, "Notes", "plain text")

        assert store.count_documents() == 0
        assert analyzer.seen == []


class TestAnalytics:
    """Admin dashboard aggregates."""

    def test_counts(self, documents, store, user):
        documents.upload(user.id, "A", "invoice invoice payment")
        documents.upload(user.id, "B", "invoice overdue")
        store.create_credit_request(user.id, 5, "more")

        now = datetime.now(timezone.utc)
        data = documents.analytics(now)

        assert data["total_users"] == 1
        assert data["total_documents"] == 2
        assert data["scans_today"] == 2
        assert data["credit_requests"]["pending"] == 1
        assert data["common_topics"][0] == {"word": "invoice", "frequency": 3}
        assert data["top_users"][0]["id"] == user.id

    def test_scans_today_is_per_utc_day(self, documents, user):
        documents.upload(user.id, "A", "text")
        tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
        assert documents.analytics(tomorrow)["scans_today"] == 0


class ReservationLostStore(MemoryStore):
    """Passes the credit check but loses the race for the last credit."""

    def decrement_credits_if_positive(self, user_id):
        return None


class TestScanCleanup:
    """A scan that cannot reserve its credit leaves nothing behind."""

    async def test_reservation_failure_removes_document(self, tmp_path, analyzer):
        store = ReservationLostStore(fs_root=str(tmp_path), mfa_encryption_key="documents-test-key")
        user = store.create_user("writer@example.com", "Writer", is_verified=True)
        service = DocumentService(store, CreditService(store, daily_limit=20), analyzer)

        with pytest.raises(InsufficientCreditsError):
            await service.scan(user.id, "Notes", "plain text")

        assert store.count_documents() == 0
        assert analyzer.seen == []


def test_jaccard_similarity():
    assert jaccard_similarity(word_set("a b c"), word_set("b c d")) == 0.5
    assert jaccard_similarity(word_set("Same words"), word_set("same WORDS")) == 1.0
    assert jaccard_similarity(set(), word_set("anything")) == 0.0


class TestMatches:
    """Similar documents ranked by word overlap."""

    def test_ranked_and_scored(self, documents, store, user):
        source = documents.upload(user.id, "Source", "invoice payment overdue notice")
        close = documents.upload(user.id, "Close", "invoice payment overdue reminder")
        far = documents.upload(user.id, "Far", "invoice for lunch")
        documents.upload(user.id, "Unrelated", "completely different text")

        result = documents.matches(user.id, source.id)

        assert result["document_id"] == source.id
        assert result["totalMatches"] == 2
        assert [m["id"] for m in result["matches"]] == [close.id, far.id]
        assert result["matches"][0] == {"id": close.id, "title": "Close", "similarity": 0.6}
        assert set(result["matches"][0]) == {"id", "title", "similarity"}

    def test_other_users_documents_are_candidates(self, documents, store, user):
        other = store.create_user("other@example.com", "Other")
        source = documents.upload(user.id, "Mine", "shared vocabulary here")
        theirs = documents.upload(other.id, "Theirs", "shared vocabulary here")

        result = documents.matches(user.id, source.id)

        assert result["matches"][0]["id"] == theirs.id
        assert result["matches"][0]["similarity"] == 1.0

    def test_limit_keeps_total(self, documents, user):
        source = documents.upload(user.id, "Source", "common")
        for i in range(12):
            documents.upload(user.id, f"Copy {i}", f"common unique{i}")

        result = documents.matches(user.id, source.id)

        assert len(result["matches"]) == 10
        assert result["totalMatches"] == 12

    def test_foreign_source_document(self, documents, store, user):
        other = store.create_user("other@example.com", "Other")
        doc = documents.upload(user.id, "Mine", "secret notes")

        with pytest.raises(NotFoundError):
            documents.matches(other.id, doc.id)
