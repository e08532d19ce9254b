"""Data transfer objects for the emission pipeline.

Documents, clients and products are plain in-memory records handed over by
the document store. Amounts use ``Decimal`` quantized with ``ROUND_HALF_UP``
to two decimals so the computed totals are reproducible.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from backend.core.config import settings

DecimalLike = Union[Decimal, str, int, float]


def to_decimal(value: DecimalLike) -> Decimal:
    """Convert input to ``Decimal``; floats go through ``str`` first."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, str, float)):
        return Decimal(str(value))
    raise TypeError(f"Unsupported decimal input: {type(value)!r}")


def quantize_money(amount: DecimalLike) -> Decimal:
    return to_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentType(str, Enum):
    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"
    EXPORT_INVOICE = "export_invoice"


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    FAILED = "failed"


@dataclass
class Product:
    id: int
    code: str
    name: str
    unit_measure: str = "UND"
    kind: str = "producto"  # producto|servicio
    applies_iva: bool = True
    unspsc_code: Optional[str] = None

    @property
    def is_service(self) -> bool:
        return self.kind == "servicio"


@dataclass
class Client:
    id: int
    identification_type: str
    identification_number: str
    full_name: str
    person_type: str = "natural"  # natural|juridica
    tax_regime: Optional[str] = None
    verification_digit: Optional[str] = None
    company: Optional[str] = None
    trade_name: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    city_code: Optional[str] = None


@dataclass
class LineItem:
    product: Product
    quantity: Decimal
    unit_price: Decimal
    discount_rate: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    code: Optional[str] = None
    name: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        gross = to_decimal(self.quantity) * to_decimal(self.unit_price)
        discount = gross * to_decimal(self.discount_rate) / Decimal("100")
        return quantize_money(gross - discount)

    @property
    def tax_amount(self) -> Decimal:
        return quantize_money(self.subtotal * to_decimal(self.tax_rate) / Decimal("100"))

    @property
    def total(self) -> Decimal:
        return quantize_money(self.subtotal + self.tax_amount)


@dataclass
class Document:
    """An invoice or credit note as stored by the billing application.

    ``external_id`` is the identifier used for status and artifact lookups
    (the document number assigned by the external service). ``external_bill_id``
    keeps the numeric id the service uses to reference an invoice from a
    credit note.
    """

    id: int
    doc_type: DocumentType
    issue_date: date
    client: Optional[Client] = None
    items: List[LineItem] = field(default_factory=list)
    due_date: Optional[date] = None
    number: Optional[str] = None
    prefix: Optional[str] = None
    consecutive: Optional[int] = None
    operation_type: Optional[str] = "venta"
    payment_form: Optional[str] = "contado"
    payment_method: Optional[str] = None
    observations: str = ""
    status: DocumentStatus = DocumentStatus.DRAFT
    external_id: Optional[str] = None
    external_bill_id: Optional[int] = None
    cufe: Optional[str] = None
    qr: Optional[str] = None
    public_url: Optional[str] = None
    pdf_url: Optional[str] = None
    xml_url: Optional[str] = None
    attempt_counter: int = 0
    last_response: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    # Credit notes only
    original: Optional["Document"] = None
    correction_concept: Optional[Union[int, str]] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None

    @property
    def is_credit_note(self) -> bool:
        return self.doc_type == DocumentType.CREDIT_NOTE

    @property
    def has_reference(self) -> bool:
        return self.original is not None

    @property
    def subtotal(self) -> Decimal:
        return quantize_money(sum((item.subtotal for item in self.items), Decimal("0")))

    @property
    def tax_total(self) -> Decimal:
        return quantize_money(sum((item.tax_amount for item in self.items), Decimal("0")))

    @property
    def total(self) -> Decimal:
        return quantize_money(self.subtotal + self.tax_total)


@dataclass
class NumberingRange:
    id: int
    doc_type: DocumentType
    prefix: str
    lower_bound: int
    upper_bound: int
    counter: int
    active: bool = True
    external_id: Optional[int] = None
    resolution: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def wire_id(self) -> int:
        """Range id sent as ``numbering_range_id`` on the wire."""
        return self.external_id if self.external_id is not None else self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "doc_type": self.doc_type.value,
            "prefix": self.prefix,
            "lower_bound": self.lower_bound,
            "upper_bound": self.upper_bound,
            "counter": self.counter,
            "active": self.active,
            "external_id": self.external_id,
            "resolution": self.resolution,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Credentials:
    """Credential set for one external service account."""

    base_url: str
    client_id: str
    client_secret: str
    username: str
    password: str
    environment: str = "sandbox"
    access_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None

    @classmethod
    def from_settings(cls) -> "Credentials":
        return cls(
            base_url=settings.FACTUS_BASE_URL.rstrip("/"),
            client_id=settings.FACTUS_CLIENT_ID,
            client_secret=settings.FACTUS_CLIENT_SECRET,
            username=settings.FACTUS_USERNAME,
            password=settings.FACTUS_PASSWORD,
            environment=settings.FACTUS_ENVIRONMENT,
        )


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass
class EmissionResult:
    """Envelope returned by every public emission operation."""

    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result
