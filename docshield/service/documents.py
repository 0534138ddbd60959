from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from docshield.logging import get_logger
from docshield.service.analysis import DocumentAnalyzer
from docshield.service.credits import CreditService
from docshield.service.errors import InsufficientCreditsError, NotFoundError, ValidationError
from docshield.storage.models import ActivityAction, Document, User

logger = get_logger(__name__)

ALLOWED_FILE_TYPES = frozenset({"text/plain", "text/markdown", "text/csv", "application/json"})

# Frequency analysis ignores these on top of the length cut-off
STOP_WORDS = frozenset({"the", "be", "to", "of", "and", "a", "in", "that", "have", "i"})

MAX_MATCHES = 10
MATCH_CANDIDATES = 1000

_WORD_SPLIT = re.compile(r"\W+")


class DocumentStore(Protocol):
    def create_document(
        self, user_id: str, title: str, content: str, *, file_type: str = "text/plain"
    ) -> Document: ...

    def get_document(self, document_id: str) -> Optional[Document]: ...

    def list_documents(self, user_id: str, limit: int = 100) -> List[Document]: ...

    def list_recent_documents(self, limit: int = 100) -> List[Document]: ...

    def count_documents(self, *, since: Optional[datetime] = None) -> int: ...

    def update_document(
        self,
        document_id: str,
        *,
        analysis: Optional[str] = None,
        status: Optional[str] = None,
        increment_views: bool = False,
    ) -> Optional[Document]: ...

    def delete_document(self, document_id: str) -> bool: ...

    def count_users(self) -> int: ...

    def top_users_by_scans(self, limit: int = 5) -> List[User]: ...

    def count_credit_requests_by_status(self) -> Dict[str, int]: ...

    def log_activity(self, user_id: str, action: str, details: Optional[Dict] = None) -> Any: ...


def common_words(contents: Iterable[str], *, limit: int = 10) -> List[Dict[str, Any]]:
    """Most frequent words longer than three characters, stop words excluded."""
    counts: Counter[str] = Counter()
    for content in contents:
        for word in _WORD_SPLIT.split((content or "").lower()):
            if len(word) > 3 and word not in STOP_WORDS:
                counts[word] += 1
    return [{"word": word, "frequency": freq} for word, freq in counts.most_common(limit)]


def word_set(content: str) -> Set[str]:
    return {word for word in _WORD_SPLIT.split((content or "").lower()) if word}


def jaccard_similarity(left: Set[str], right: Set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


class DocumentService:
    """Owner-scoped document storage plus the credit-gated analysis operation."""

    def __init__(
        self,
        store: DocumentStore,
        credits: CreditService,
        analyzer: DocumentAnalyzer,
        *,
        max_document_bytes: int = 5 * 1024 * 1024,
    ) -> None:
        self.store = store
        self.credits = credits
        self.analyzer = analyzer
        self.max_document_bytes = max_document_bytes

    def upload(
        self, user_id: str, title: str, content: str, *, file_type: str = "text/plain"
    ) -> Document:
        title = (title or "").strip()
        if not title:
            raise ValidationError("title is required", detail={"field": "title"})
        if not content or not content.strip():
            raise ValidationError("No file uploaded", detail={"field": "content"})
        if file_type not in ALLOWED_FILE_TYPES:
            raise ValidationError(
                "Only text documents are supported",
                detail={"field": "file_type", "allowed": sorted(ALLOWED_FILE_TYPES)},
            )
        size = len(content.encode("utf-8"))
        if size > self.max_document_bytes:
            raise ValidationError(
                "Document is too large",
                detail={"size": size, "max_bytes": self.max_document_bytes},
            )
        doc = self.store.create_document(user_id, title, content, file_type=file_type)
        self._log(user_id, ActivityAction.DOCUMENT_UPLOAD, {"document_id": doc.id, "size": size})
        logger.info("document_uploaded", user_id=user_id, document_id=doc.id, size=size)
        return doc

    def get_owned(self, user_id: str, document_id: str) -> Document:
        doc = self.store.get_document(document_id)
        # Another user's document looks the same as a missing one
        if not doc or doc.user_id != user_id:
            raise NotFoundError("Document not found", detail={"document_id": document_id})
        return doc

    def view(self, user_id: str, document_id: str) -> Document:
        self.get_owned(user_id, document_id)
        doc = self.store.update_document(document_id, increment_views=True)
        if not doc:
            raise NotFoundError("Document not found", detail={"document_id": document_id})
        return doc

    def list_for_user(self, user_id: str, limit: int = 100) -> List[Document]:
        return self.store.list_documents(user_id, limit=limit)

    def delete(self, user_id: str, document_id: str) -> None:
        self.get_owned(user_id, document_id)
        self.store.delete_document(document_id)
        self._log(user_id, ActivityAction.DOCUMENT_DELETE, {"document_id": document_id})
        logger.info("document_deleted", user_id=user_id, document_id=document_id)

    async def analyze(self, user_id: str, document_id: str) -> tuple[Document, int]:
        """Run the analyzer on a document for one credit.

        Returns the updated document and the remaining balance. A failed
        analysis marks the document ``failed`` and refunds the credit.
        """
        doc = self.get_owned(user_id, document_id)
        async with self.credits.spend(user_id, details={"document_id": doc.id}) as remaining:
            self.store.update_document(doc.id, status="processing")
            try:
                analysis = await self.analyzer.analyze(doc.content, user_id=user_id)
            except Exception:
                self.store.update_document(doc.id, status="failed")
                raise
            updated = self.store.update_document(doc.id, analysis=analysis, status="completed")
        logger.info("document_analyzed", user_id=user_id, document_id=doc.id, remaining=remaining)
        return updated or doc, remaining

    async def scan(
        self, user_id: str, title: str, content: str, *, file_type: str = "text/plain"
    ) -> tuple[Document, int]:
        """Upload and analyze in one call; the credit is checked before anything is stored.

        If the reservation still fails after the check, the uploaded document is
        removed again.
        """
        self.credits.check(user_id)
        doc = self.upload(user_id, title, content, file_type=file_type)
        try:
            return await self.analyze(user_id, doc.id)
        except InsufficientCreditsError:
            self.store.delete_document(doc.id)
            logger.info("scan_document_discarded", user_id=user_id, document_id=doc.id)
            raise

    def matches(
        self, user_id: str, document_id: str, *, limit: int = MAX_MATCHES
    ) -> Dict[str, Any]:
        """Documents whose vocabulary overlaps the caller's document.

        Similarity is the Jaccard index of the two lowercase word sets. Only
        positive scores are kept, best first.
        """
        source = self.get_owned(user_id, document_id)
        source_words = word_set(source.content)
        scored = []
        for candidate in self.store.list_recent_documents(limit=MATCH_CANDIDATES):
            if candidate.id == source.id:
                continue
            similarity = jaccard_similarity(source_words, word_set(candidate.content))
            if similarity > 0:
                scored.append((similarity, candidate))
        scored.sort(key=lambda item: item[0], reverse=True)
        logger.info(
            "document_matches_computed",
            user_id=user_id,
            document_id=source.id,
            total=len(scored),
        )
        return {
            "document_id": source.id,
            "matches": [
                {"id": doc.id, "title": doc.title, "similarity": round(similarity, 4)}
                for similarity, doc in scored[:limit]
            ],
            "totalMatches": len(scored),
        }

    def analytics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        start_of_day = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
        recent = self.store.list_recent_documents(limit=100)
        return {
            "total_users": self.store.count_users(),
            "total_documents": self.store.count_documents(),
            "scans_today": self.store.count_documents(since=start_of_day),
            "top_users": [
                {
                    "id": u.id,
                    "username": u.username,
                    "email": u.email,
                    "total_scans": u.total_scans,
                }
                for u in self.store.top_users_by_scans(limit=5)
            ],
            "credit_requests": self.store.count_credit_requests_by_status(),
            "common_topics": common_words(doc.content for doc in recent),
        }

    def _log(self, user_id: str, action: str, details: Dict[str, Any]) -> None:
        try:
            self.store.log_activity(user_id, action, details)
        except Exception as exc:
            logger.warning("activity_log_failed", user_id=user_id, action=action, error=str(exc))


__all__ = [
    "ALLOWED_FILE_TYPES",
    "DocumentService",
    "common_words",
    "jaccard_similarity",
    "word_set",
]
