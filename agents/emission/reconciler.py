"""Persist the outcome of a transmission attempt into the document record."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from backend.core.observability.logging import get_logger

from .dto import Document, DocumentStatus, DocumentType
from .errors import DocumentNotFoundError
from .responses import extract_artifacts, extract_bill_id, extract_identifier
from .sender import SendResult
from .store import DocumentStore

logger = get_logger(__name__)

MISSING_IDENTIFIER = (
    "Factus accepted the document but the response carries no identifier "
    "(number/id); status and PDF lookups would be impossible"
)


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


def audit_blob(response: Any, outcome: SendResult, received_at: datetime) -> Dict[str, Any]:
    """JSON-safe snapshot of a raw response for the document's audit trail."""
    body = response
    if isinstance(response, (bytes, bytearray)):
        body = {"base64": base64.b64encode(bytes(response)).decode("ascii")}
    return {
        "received_at": received_at.isoformat(),
        "success": outcome.success,
        "status_code": outcome.status_code,
        "attempts": outcome.attempts,
        "body": body,
    }


class ResponseReconciler:
    def __init__(
        self,
        store: DocumentStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._clock = clock or _default_clock

    def reconcile(self, document_id: int, response: Any, outcome: SendResult) -> Document:
        """Record the result of one attempt; always bumps ``attempt_counter``.

        A success without an extractable identifier is stored as ``failed``:
        a submitted document must stay traceable on the remote side.
        """
        document = self._store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)

        now = self._clock()
        changes: Dict[str, Any] = {
            "attempt_counter": document.attempt_counter + 1,
            "last_response": audit_blob(response, outcome, now),
            "last_attempt_at": now,
        }

        if outcome.success:
            changes.update(self._success_changes(document, response, now))
        else:
            changes.update(
                {
                    "status": DocumentStatus.FAILED,
                    "errors": outcome.messages or ["unknown error"],
                }
            )

        updated = self._store.update_document(document_id, changes)
        logger.info(
            "Document reconciled",
            extra={
                "document_id": document_id,
                "doc_type": document.doc_type.value,
                "status": updated.status.value,
                "attempt_counter": updated.attempt_counter,
                "external_id": updated.external_id,
            },
        )
        return updated

    def _success_changes(self, document: Document, response: Any, now: datetime) -> Dict[str, Any]:
        doc_type = document.doc_type.value
        identifier = extract_identifier(response, doc_type)
        if not identifier:
            logger.error(
                "Success response without identifier",
                extra={"document_id": document.id, "doc_type": doc_type},
            )
            return {"status": DocumentStatus.FAILED, "errors": [MISSING_IDENTIFIER]}

        changes: Dict[str, Any] = {
            "status": DocumentStatus.SUBMITTED,
            "external_id": identifier,
            "errors": [],
            "submitted_at": now,
        }
        for name, value in extract_artifacts(response, doc_type).items():
            if value:
                changes[name] = value
        if document.doc_type != DocumentType.CREDIT_NOTE:
            bill_id = extract_bill_id(response)
            if bill_id is not None:
                changes["external_bill_id"] = bill_id
        return changes
