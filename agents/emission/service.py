"""Emission pipeline: validate, number, map, send, reconcile.

Every public operation returns an ``EmissionResult`` envelope as a dict.
Failures inside ``emit`` always end in a persisted document update (status
plus incremented attempt counter) so callers re-query the document instead
of interpreting exceptions.
"""

from __future__ import annotations

import base64
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import quote

import anyio
import httpx

from backend.core.observability import set_trace_id
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import (
    increment_emission_attempts,
    increment_emission_failures,
    increment_emission_submitted,
)

from .credentials import CredentialManager
from .dto import Document, DocumentStatus, DocumentType, EmissionResult
from .errors import DocumentNotFoundError, MappingError, NumberingError, RangeNotFoundError
from .mapper import FieldMapper, NumberingSelection
from .numbering import NumberingAllocator, Reservation
from .reconciler import ResponseReconciler
from .responses import dig
from .sender import SendOptions, SendResult, TransmissionSender, validate_credit_note_payload
from .store import CredentialStore, DocumentStore, RangeStore

logger = get_logger(__name__)

ARTIFACT_KINDS = ("pdf", "xml")

_ARTIFACT_CONTENT_KEYS = {
    "pdf": ("pdf_base_64_encoded", "pdf_base64"),
    "xml": ("xml_base_64_encoded", "xml_base64"),
}
_ARTIFACT_CONTENT_TYPES = {"pdf": "application/pdf", "xml": "application/xml"}

# Failures where the number never reached Factus, or Factus rejected the document
RELEASABLE_FAILURES = frozenset(
    {"validation", "mapping", "configuration", "authentication", "client"}
)


def _resource(doc_type: DocumentType) -> str:
    return "credit-notes" if doc_type == DocumentType.CREDIT_NOTE else "bills"


class EmissionService:
    def __init__(
        self,
        documents: DocumentStore,
        ranges: RangeStore,
        credentials: CredentialStore,
        *,
        client: Optional[httpx.AsyncClient] = None,
        options: Optional[SendOptions] = None,
        clock: Optional[Callable[[], datetime]] = None,
        today: Optional[Callable[[], date]] = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ) -> None:
        self._documents = documents
        self.credentials = CredentialManager(credentials, client=client, clock=clock)
        self.allocator = NumberingAllocator(ranges, clock=clock)
        self.mapper = FieldMapper(documents, self.allocator, today=today, clock=clock)
        self.sender = TransmissionSender(self.credentials, client=client, options=options, sleep=sleep)
        self.reconciler = ResponseReconciler(documents, clock=clock)

    # Emission

    async def emit(self, document_id: int) -> Dict[str, Any]:
        set_trace_id()
        document = await anyio.to_thread.run_sync(self._documents.get_document, document_id)
        if document is None:
            return EmissionResult(
                success=False,
                message="Emission failed",
                error=f"Document {document_id} not found",
            ).to_dict()

        doc_type = document.doc_type
        increment_emission_attempts(doc_type.value)
        logger.info(
            "Emission started",
            extra={"document_id": document_id, "doc_type": doc_type.value},
        )

        if document.status == DocumentStatus.SUBMITTED and document.external_id:
            return EmissionResult(
                success=True,
                message="Document already emitted",
                data=self._document_data(document),
            ).to_dict()

        validation = await anyio.to_thread.run_sync(self.mapper.validate, document_id)
        if not validation.valid:
            outcome = SendResult(
                success=False,
                error="; ".join(validation.errors),
                errors=validation.errors,
                error_kind="validation",
            )
            return await self._finish(document, outcome, None, message="Document failed validation")

        reservation = await self._reserve(doc_type)
        numbering = NumberingSelection.from_reservation(reservation) if reservation else None

        try:
            payload = await anyio.to_thread.run_sync(
                self.mapper.map_to_external_payload, document_id, numbering
            )
        except (MappingError, DocumentNotFoundError) as exc:
            outcome = SendResult(
                success=False,
                error=str(exc),
                errors=getattr(exc, "errors", [str(exc)]),
                error_kind="mapping",
            )
            return await self._finish(
                document, outcome, reservation, message="Document could not be mapped"
            )

        if doc_type == DocumentType.CREDIT_NOTE:
            check = validate_credit_note_payload(payload)
            if not check.valid:
                outcome = SendResult(
                    success=False,
                    error="; ".join(check.errors),
                    errors=check.errors,
                    error_kind="validation",
                )
                return await self._finish(
                    document, outcome, reservation, message="Payload failed validation"
                )

        outcome = await self.sender.send(payload, doc_type)
        return await self._finish(
            document,
            outcome,
            reservation,
            message="Document emitted to Factus" if outcome.success else "Emission failed",
            reference_code=payload.get("reference_code"),
        )

    def validate(self, document_id: int) -> Dict[str, Any]:
        return self.mapper.validate(document_id).to_dict()

    async def _reserve(self, doc_type: DocumentType) -> Optional[Reservation]:
        try:
            return await self.allocator.reserve(doc_type)
        except NumberingError as exc:
            logger.warning(
                "No number reserved, mapper falls back to configured numbering",
                extra={"doc_type": doc_type.value, "error": str(exc)},
            )
            return None

    async def _finish(
        self,
        document: Document,
        outcome: SendResult,
        reservation: Optional[Reservation],
        *,
        message: str,
        reference_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        response = outcome.data if outcome.success else outcome.error_body
        updated, persist_error = await anyio.to_thread.run_sync(
            self._persist, document.id, response, outcome
        )
        if reservation is not None:
            self._settle(reservation, outcome)

        doc_type = document.doc_type.value
        submitted = updated is not None and updated.status == DocumentStatus.SUBMITTED
        if submitted:
            increment_emission_submitted(doc_type)
            data = self._document_data(updated)
            if reference_code:
                data["reference_code"] = reference_code
            logger.info(
                "Emission succeeded",
                extra={"document_id": document.id, "external_id": updated.external_id},
            )
            return EmissionResult(success=True, message=message, data=data).to_dict()

        if outcome.success and updated is not None:
            # HTTP success without a usable identifier
            message = "Factus accepted the document but returned no identifier"
            errors = list(updated.errors)
            reason = "reconciliation"
        elif outcome.success:
            message = "Factus accepted the document but the outcome could not be persisted"
            errors = [persist_error or "unknown error"]
            reason = "persistence"
        else:
            errors = outcome.messages
            reason = outcome.error_kind or "unknown"
        increment_emission_failures(doc_type, reason)

        data = {
            "document_id": document.id,
            "status": updated.status.value if updated else DocumentStatus.FAILED.value,
            "status_code": outcome.status_code,
            "attempts": outcome.attempts,
            "errors": errors,
        }
        if updated is not None:
            data["attempt_counter"] = updated.attempt_counter
        if persist_error:
            data["persist_error"] = persist_error
        logger.warning(
            "Emission failed",
            extra={"document_id": document.id, "reason": reason, "status_code": outcome.status_code},
        )
        return EmissionResult(
            success=False,
            message=message,
            data=data,
            error="; ".join(errors) if errors else outcome.error,
        ).to_dict()

    def _settle(self, reservation: Reservation, outcome: SendResult) -> None:
        if outcome.success:
            self.allocator.commit(reservation.reservation_id)
        elif outcome.error_kind in RELEASABLE_FAILURES and outcome.attempts <= 1:
            self.allocator.abort(reservation.reservation_id)
        else:
            # The service may hold the number already, from this or an earlier attempt
            self.allocator.burn(reservation.reservation_id)

    def _persist(
        self, document_id: int, response: Any, outcome: SendResult
    ) -> Tuple[Optional[Document], Optional[str]]:
        try:
            return self.reconciler.reconcile(document_id, response, outcome), None
        except Exception as exc:
            # The caller still gets the emission outcome; the write failure is reported apart
            logger.exception(
                "Could not persist emission outcome",
                extra={"document_id": document_id, "error": str(exc)},
            )
            return None, f"Could not persist emission outcome: {exc}"

    @staticmethod
    def _document_data(document: Document) -> Dict[str, Any]:
        return {
            "document_id": document.id,
            "status": document.status.value,
            "external_id": document.external_id,
            "cufe": document.cufe,
            "qr": document.qr,
            "public_url": document.public_url,
            "pdf_url": document.pdf_url,
            "xml_url": document.xml_url,
            "attempt_counter": document.attempt_counter,
        }

    # Read-only lookups

    async def get_status(
        self, external_id: str, doc_type: DocumentType | str = DocumentType.INVOICE
    ) -> Dict[str, Any]:
        path = f"/v1/{_resource(DocumentType(doc_type))}/{quote(str(external_id), safe='')}"
        result = await self.sender.get(path)
        if not result.success:
            return EmissionResult(
                success=False, message="Status lookup failed", error=result.error
            ).to_dict()
        return EmissionResult(success=True, message="Status retrieved", data=result.data).to_dict()

    async def download_artifact(
        self,
        external_id: str,
        kind: str = "pdf",
        doc_type: DocumentType | str = DocumentType.INVOICE,
    ) -> Dict[str, Any]:
        if kind not in ARTIFACT_KINDS:
            return EmissionResult(
                success=False,
                message="Artifact download failed",
                error=f"Unsupported artifact kind: {kind}",
            ).to_dict()

        doc_type = DocumentType(doc_type)
        number = quote(str(external_id), safe="")
        result = await self.sender.get(f"/v1/{_resource(doc_type)}/download-{kind}/{number}")
        if not result.success:
            return EmissionResult(
                success=False, message="Artifact download failed", error=result.error
            ).to_dict()

        artifact = self._artifact_from_body(result.data, kind, str(external_id), doc_type)
        if artifact is None:
            return EmissionResult(
                success=False,
                message="Artifact download failed",
                error=f"Factus response carries no {kind.upper()}",
            ).to_dict()
        return EmissionResult(success=True, message="Artifact retrieved", data=artifact).to_dict()

    @staticmethod
    def _artifact_from_body(
        body: Any, kind: str, external_id: str, doc_type: DocumentType
    ) -> Optional[Dict[str, Any]]:
        file_name = f"{external_id}.{kind}"
        content_type = _ARTIFACT_CONTENT_TYPES[kind]
        if isinstance(body, (bytes, bytearray)):
            return {
                "file_name": file_name,
                "content_type": content_type,
                "content_base64": base64.b64encode(bytes(body)).decode("ascii"),
            }
        if not isinstance(body, Mapping):
            return None
        if body.get("redirect_url"):
            return {"redirect_url": body["redirect_url"]}

        containers = [c for c in (body.get("data"), body) if isinstance(c, Mapping)]
        for container in containers:
            for key in _ARTIFACT_CONTENT_KEYS[kind]:
                if container.get(key):
                    return {
                        "file_name": f"{container.get('file_name') or external_id}.{kind}",
                        "content_type": content_type,
                        "content_base64": container[key],
                    }
        for container in containers:
            if container.get(f"{kind}_url"):
                return {"url": container[f"{kind}_url"]}
        if doc_type == DocumentType.CREDIT_NOTE and dig(body, "data.credit_note.public_url"):
            return {"redirect_url": dig(body, "data.credit_note.public_url")}
        return None

    async def list_documents(
        self,
        *,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if from_date:
            params["from_date"] = from_date.isoformat()
        if to_date:
            params["to_date"] = to_date.isoformat()
        if status:
            params["status"] = status
        result = await self.sender.get("/v1/bills", params=params)
        if not result.success:
            return EmissionResult(success=False, message="Listing failed", error=result.error).to_dict()
        return EmissionResult(success=True, message="Documents retrieved", data=result.data).to_dict()

    # Operations

    def get_range_stats(self, range_id: int) -> Dict[str, Any]:
        try:
            stats = self.allocator.get_range_stats(range_id)
        except RangeNotFoundError as exc:
            return EmissionResult(success=False, message="Range not found", error=str(exc)).to_dict()
        return EmissionResult(success=True, message="Range statistics", data=stats).to_dict()

    def get_token_info(self) -> Dict[str, Any]:
        return self.credentials.get_token_info()

    def invalidate_token(self) -> Dict[str, Any]:
        self.credentials.invalidate_token()
        return EmissionResult(success=True, message="Token invalidated").to_dict()

    async def test_connection(self) -> Dict[str, Any]:
        return await self.credentials.test_connection()

    async def aclose(self) -> None:
        await self.sender.aclose()
        await self.credentials.aclose()
