"""Translate stored invoices and credit notes into the Factus wire schema."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from backend.core.config import settings
from backend.core.observability.logging import get_logger

from . import code_tables
from .dto import Client, Document, DocumentType, LineItem, ValidationResult, to_decimal
from .errors import DocumentNotFoundError, MappingError, NumberingError
from .numbering import NumberingAllocator, Reservation
from .responses import extract_bill_id
from .store import DocumentStore

logger = get_logger(__name__)

DUE_DATE_GRACE = timedelta(days=30)
DAY_START = "00:00:00"
DAY_END = "23:59:59"


@dataclass(frozen=True)
class NumberingSelection:
    range_id: int
    prefix: str
    consecutive: int
    source: str  # allocator|reservation|config

    @property
    def reference_code(self) -> str:
        return f"{self.prefix}-{self.consecutive}"

    @classmethod
    def from_reservation(cls, reservation: Reservation) -> "NumberingSelection":
        return cls(
            range_id=reservation.wire_range_id,
            prefix=reservation.prefix,
            consecutive=reservation.consecutive,
            source="reservation",
        )


def format_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def normalize_dates(issue_date: date, due_date: Optional[date], today: date) -> Tuple[date, date]:
    """Clamp a future emission date to today and keep the due date after it."""
    if issue_date > today:
        logger.warning(
            "Emission date in the future, using today",
            extra={"issue_date": format_date(issue_date), "today": format_date(today)},
        )
        issue_date = today
    due = due_date or issue_date
    if due < issue_date:
        logger.warning("Due date before emission date, moving it 30 days after emission")
        due = issue_date + DUE_DATE_GRACE
    return issue_date, due


def consolidate_items(items: List[LineItem]) -> List[LineItem]:
    """Merge items that reference the same product by summing quantities.

    The first occurrence keeps its position and all other fields.
    """
    merged: Dict[int, LineItem] = {}
    for item in items:
        key = item.product.id
        if key in merged:
            first = merged[key]
            merged[key] = replace(first, quantity=to_decimal(first.quantity) + to_decimal(item.quantity))
        else:
            merged[key] = replace(item)
    if len(merged) < len(items):
        logger.warning(
            "Duplicate line items consolidated",
            extra={"items_before": len(items), "items_after": len(merged)},
        )
    return list(merged.values())


def _number(value: Any) -> float:
    return float(to_decimal(value))


def _standard_code(unspsc_code: Optional[str]) -> int:
    if not unspsc_code:
        return 1
    try:
        return int(str(unspsc_code).strip())
    except ValueError:
        return 1


def _today() -> date:
    return date.today()


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


class FieldMapper:
    def __init__(
        self,
        store: DocumentStore,
        allocator: Optional[NumberingAllocator] = None,
        *,
        today: Callable[[], date] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._allocator = allocator
        self._today = today or _today
        self._clock = clock or _default_clock

    # Loading and validation

    def load_document(self, document_id: int) -> Document:
        document = self._store.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        if document.client is None and not (document.is_credit_note and not document.has_reference):
            raise MappingError(f"Document {document_id} has no client")
        if not document.items:
            raise MappingError(f"Document {document_id} has no items")
        return document

    def validate(self, document_id: int) -> ValidationResult:
        """Pre-flight checks; never touches the network."""
        document = self._store.get_document(document_id)
        if document is None:
            return ValidationResult(valid=False, errors=[f"Document {document_id} not found"])

        errors: List[str] = []
        warnings: List[str] = []

        if document.doc_type == DocumentType.DEBIT_NOTE:
            errors.append("Debit notes cannot be emitted")
        if document.is_credit_note:
            if document.has_reference and self._bill_id(document.original) is None:
                errors.append("The referenced invoice has not been emitted to Factus (missing bill id)")
            if document.correction_concept in (None, ""):
                errors.append("A correction concept is required")
        elif document.client is None:
            errors.append("The document must have a client")

        if not document.items:
            errors.append("The document must have at least one item")
        for index, item in enumerate(document.items, start=1):
            if to_decimal(item.quantity) <= 0:
                errors.append(f"Item {index}: quantity must be greater than 0")
            if to_decimal(item.unit_price) <= 0:
                errors.append(f"Item {index}: unit price must be greater than 0")

        if document.issue_date is None:
            errors.append("The emission date is required")
        elif document.issue_date > self._today():
            warnings.append(
                f"The emission date ({format_date(document.issue_date)}) is in the future "
                "and will be set to today"
            )

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    # Numbering

    def resolve_numbering(self, doc_type: DocumentType) -> NumberingSelection:
        if self._allocator is not None:
            try:
                numbering_range = self._allocator.get_active_range(doc_type)
                return NumberingSelection(
                    range_id=numbering_range.wire_id,
                    prefix=numbering_range.prefix,
                    consecutive=self._allocator.get_next_consecutive(numbering_range.id),
                    source="allocator",
                )
            except NumberingError as exc:
                logger.warning(
                    "Numbering range unavailable, using configured defaults",
                    extra={"doc_type": doc_type.value, "error": str(exc)},
                )
        return self.default_numbering(doc_type)

    def default_numbering(self, doc_type: DocumentType) -> NumberingSelection:
        range_id = settings.FACTUS_NUMBERING_RANGE_ID
        if doc_type == DocumentType.CREDIT_NOTE and settings.FACTUS_NUMBERING_RANGE_ID_CREDIT_NOTE:
            range_id = settings.FACTUS_NUMBERING_RANGE_ID_CREDIT_NOTE
        if not range_id:
            raise MappingError(f"No numbering range could be resolved for {doc_type.value}")
        return NumberingSelection(
            range_id=range_id,
            prefix=settings.FACTUS_INVOICE_PREFIX,
            consecutive=settings.FACTUS_DEFAULT_CONSECUTIVE,
            source="config",
        )

    # Payloads

    def map_to_external_payload(
        self,
        document_id: int,
        numbering: Optional[NumberingSelection] = None,
    ) -> Dict[str, Any]:
        document = self.load_document(document_id)
        if document.doc_type == DocumentType.DEBIT_NOTE:
            raise MappingError("Debit notes cannot be emitted")
        items = consolidate_items(document.items)
        numbering = numbering or self.resolve_numbering(document.doc_type)
        if document.is_credit_note:
            return self._credit_note_payload(document, items, numbering)
        return self._invoice_payload(document, items, numbering)

    def _invoice_payload(
        self, document: Document, items: List[LineItem], numbering: NumberingSelection
    ) -> Dict[str, Any]:
        client = document.client
        if client is None:
            raise MappingError(f"Document {document.id} has no client")
        issue_date, due_date = normalize_dates(document.issue_date, document.due_date, self._today())
        issue, due = format_date(issue_date), format_date(due_date)
        reference_code = document.number or numbering.reference_code
        payment_form = document.payment_form or "efectivo"

        return {
            "numbering_range_id": numbering.range_id,
            "reference_code": reference_code,
            "observation": document.observations or "",
            "payment_form": code_tables.payment_form_code(payment_form),
            "payment_due_date": due,
            "payment_method_code": code_tables.payment_method_code(
                document.payment_method or payment_form
            ),
            "operation_type": code_tables.operation_type_code(
                "exportacion"
                if document.doc_type == DocumentType.EXPORT_INVOICE
                else document.operation_type
            ),
            "send_email": False,
            "order_reference": {"reference_code": reference_code, "issue_date": issue},
            "billing_period": {
                "start_date": issue,
                "start_time": DAY_START,
                "end_date": due,
                "end_time": DAY_END,
            },
            "establishment": self._establishment(),
            "customer": self._customer(client),
            "items": [self._invoice_item(item, client) for item in items],
        }

    def _credit_note_payload(
        self, document: Document, items: List[LineItem], numbering: NumberingSelection
    ) -> Dict[str, Any]:
        reference_code = document.number or f"NC-{document.id}-{int(self._clock().timestamp() * 1000)}"
        payload: Dict[str, Any] = {
            "correction_concept_code": code_tables.correction_concept_code(
                document.correction_concept
            ),
            "reference_code": reference_code,
            "payment_method_code": code_tables.payment_method_code(document.payment_method),
            "numbering_range_id": numbering.range_id,
            "send_email": False,
            "observation": document.observations or "",
        }

        if document.has_reference:
            bill_id = self._bill_id(document.original)
            if bill_id is None:
                raise MappingError(
                    "The referenced invoice has no Factus bill id; emit the invoice first"
                )
            payload["customization_id"] = code_tables.CUSTOMIZATION_WITH_REFERENCE
            payload["bill_id"] = bill_id
        else:
            start = document.billing_period_start or document.issue_date
            start, _ = normalize_dates(start, None, self._today())
            end = document.billing_period_end or start
            if end < start:
                end = start
            payload["customization_id"] = code_tables.CUSTOMIZATION_WITHOUT_REFERENCE
            payload["billing_period"] = {
                "start_date": format_date(start),
                "start_time": DAY_START,
                "end_date": format_date(end),
                "end_time": DAY_END,
            }

        if document.client is not None:
            payload["customer"] = self._customer(document.client, credit_note=True)
        payload["items"] = [self._credit_note_item(item) for item in items]
        return payload

    def _establishment(self) -> Dict[str, str]:
        return {
            "name": settings.COMPANY_NAME,
            "address": settings.COMPANY_ADDRESS,
            "phone_number": settings.COMPANY_PHONE,
            "email": settings.COMPANY_EMAIL,
            "municipality_id": settings.COMPANY_MUNICIPALITY_ID,
        }

    def _customer(self, client: Client, *, credit_note: bool = False) -> Dict[str, Any]:
        city_code = client.city_code or code_tables.DEFAULT_DANE_CODE
        if city_code not in code_tables.MUNICIPALITIES:
            logger.warning(
                "Unknown DANE code, using Bogota",
                extra={"client_id": client.id, "city_code": city_code},
            )
        document_code = code_tables.identification_document_code(client.identification_type)
        customer: Dict[str, Any] = {
            "identification_document_id": int(document_code) if credit_note else document_code,
            "identification": str(client.identification_number),
            "dv": client.verification_digit or "",
            "company": client.company or "",
            "trade_name": client.trade_name or "",
            "names": client.full_name,
            "address": client.address or ("Sin dirección" if credit_note else ""),
            "email": client.email,
            "phone": str(client.phone or "0000000"),
            "legal_organization_id": code_tables.legal_organization_code(client.person_type),
            "tribute_id": code_tables.tax_regime_code(client.tax_regime),
            "municipality_id": code_tables.municipality_id(city_code),
        }
        if credit_note and not client.verification_digit:
            del customer["dv"]
        return customer

    def _common_item(self, item: LineItem) -> Dict[str, Any]:
        product = item.product
        return {
            "code_reference": item.code or product.code,
            "name": item.name or product.name,
            "discount_rate": _number(item.discount_rate),
            "price": _number(item.unit_price),
            "tax_rate": f"{to_decimal(item.tax_rate):.2f}",
            "unit_measure_id": code_tables.unit_measure_code(product.unit_measure),
            "standard_code_id": _standard_code(product.unspsc_code),
            "is_excluded": 0 if product.applies_iva else 1,
            "tribute_id": 1,
            "note": "Servicio" if product.is_service else "",
            "withholding_taxes": [],
        }

    def _invoice_item(self, item: LineItem, client: Client) -> Dict[str, Any]:
        mapped = self._common_item(item)
        mapped["scheme_id"] = "0" if item.product.is_service else "1"
        mapped["quantity"] = _number(item.quantity)
        mapped["mandate"] = {
            "identification_document_id": code_tables.identification_document_code(
                client.identification_type
            ),
            "identification": str(client.identification_number),
        }
        return mapped

    def _credit_note_item(self, item: LineItem) -> Dict[str, Any]:
        mapped = self._common_item(item)
        mapped["code_reference"] = mapped["code_reference"] or "SIN-CODIGO"
        mapped["name"] = mapped["name"] or "Producto"
        mapped["quantity"] = int(to_decimal(item.quantity))
        return mapped

    @staticmethod
    def _bill_id(original: Optional[Document]) -> Optional[int]:
        if original is None:
            return None
        if original.external_bill_id:
            return int(original.external_bill_id)
        response = original.last_response or {}
        body = response.get("body", response) if isinstance(response, dict) else response
        return extract_bill_id(body)
