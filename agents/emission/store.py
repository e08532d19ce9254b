"""Store interfaces consumed by the emission pipeline, plus in-memory versions.

The document store, numbering ranges and credential record are owned by the
billing application. The pipeline only needs get/update-by-id style access,
so the contracts below stay small. ``backend.apps.emission.repository``
provides SQLAlchemy implementations of the same contracts.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .dto import Credentials, Document, DocumentStatus, DocumentType, NumberingRange
from .errors import ConfigurationError, DocumentNotFoundError, RangeNotFoundError

DOCUMENT_UPDATE_FIELDS = frozenset(
    (
        "status",
        "external_id",
        "external_bill_id",
        "cufe",
        "qr",
        "public_url",
        "pdf_url",
        "xml_url",
        "attempt_counter",
        "last_response",
        "errors",
        "submitted_at",
        "last_attempt_at",
        "number",
        "prefix",
        "consecutive",
    )
)


class DocumentStore(Protocol):
    """Document access contract.

    ``get_document`` returns the document with client, items (and products),
    and for credit notes the referenced original invoice, or ``None``.
    ``update_document`` applies a partial update and returns the new state.
    """

    def get_document(self, document_id: int) -> Optional[Document]:
        ...

    def update_document(self, document_id: int, changes: Mapping[str, Any]) -> Document:
        ...


class RangeStore(Protocol):
    def list_ranges(self, doc_type: Optional[DocumentType] = None) -> List[NumberingRange]:
        ...

    def get_range(self, range_id: int) -> Optional[NumberingRange]:
        ...

    def add_range(self, numbering_range: NumberingRange) -> NumberingRange:
        """Persist a new range; the store assigns ``id``."""
        ...

    def update_range(self, range_id: int, changes: Mapping[str, Any]) -> NumberingRange:
        ...

    def increment_counter(self, range_id: int) -> int:
        """Atomically add one to the counter and return the new value."""
        ...


class CredentialStore(Protocol):
    def load(self) -> Credentials:
        ...

    def save(self, credentials: Credentials) -> None:
        ...


def check_document_update(current: Document, changes: Mapping[str, Any]) -> None:
    """Reject updates that would break the document invariants."""
    unknown = set(changes) - DOCUMENT_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported document fields: {sorted(unknown)}")

    counter = changes.get("attempt_counter", current.attempt_counter)
    if counter < current.attempt_counter:
        raise ValueError("attempt_counter must not decrease")

    status = DocumentStatus(changes.get("status", current.status))
    external_id = changes.get("external_id", current.external_id)
    if status == DocumentStatus.SUBMITTED and not external_id:
        raise ValueError("a submitted document requires an external identifier")


class InMemoryDocumentStore:
    def __init__(self, documents: Optional[List[Document]] = None) -> None:
        self._documents: Dict[int, Document] = {doc.id: doc for doc in documents or []}
        self.updates: List[Dict[str, Any]] = []

    def add(self, document: Document) -> Document:
        self._documents[document.id] = document
        return document

    def get_document(self, document_id: int) -> Optional[Document]:
        return self._documents.get(document_id)

    def update_document(self, document_id: int, changes: Mapping[str, Any]) -> Document:
        document = self._documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        check_document_update(document, changes)
        for key, value in changes.items():
            if key == "status":
                value = DocumentStatus(value)
            setattr(document, key, value)
        self.updates.append({"document_id": document_id, **changes})
        return document


class InMemoryRangeStore:
    def __init__(self, ranges: Optional[List[NumberingRange]] = None) -> None:
        self._ranges: Dict[int, NumberingRange] = {}
        self._lock = threading.Lock()
        for numbering_range in ranges or []:
            self._ranges[numbering_range.id] = numbering_range

    def list_ranges(self, doc_type: Optional[DocumentType] = None) -> List[NumberingRange]:
        ranges = list(self._ranges.values())
        if doc_type is not None:
            ranges = [r for r in ranges if r.doc_type == doc_type]
        return sorted(ranges, key=lambda r: r.id)

    def get_range(self, range_id: int) -> Optional[NumberingRange]:
        return self._ranges.get(range_id)

    def add_range(self, numbering_range: NumberingRange) -> NumberingRange:
        with self._lock:
            new_id = max(self._ranges, default=0) + 1
            stored = replace(numbering_range, id=new_id)
            self._ranges[new_id] = stored
        return stored

    def update_range(self, range_id: int, changes: Mapping[str, Any]) -> NumberingRange:
        numbering_range = self._require(range_id)
        for key, value in changes.items():
            setattr(numbering_range, key, value)
        return numbering_range

    def increment_counter(self, range_id: int) -> int:
        with self._lock:
            numbering_range = self._require(range_id)
            numbering_range.counter += 1
            return numbering_range.counter

    def _require(self, range_id: int) -> NumberingRange:
        numbering_range = self._ranges.get(range_id)
        if numbering_range is None:
            raise RangeNotFoundError(f"Numbering range {range_id} not found")
        return numbering_range


class InMemoryCredentialStore:
    def __init__(self, credentials: Optional[Credentials] = None) -> None:
        self._credentials = credentials
        self.saves = 0

    def load(self) -> Credentials:
        if self._credentials is None:
            raise ConfigurationError("Credential configuration not found")
        return replace(self._credentials)

    def save(self, credentials: Credentials) -> None:
        self._credentials = replace(credentials)
        self.saves += 1
