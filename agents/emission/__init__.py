"""Outbound emission of invoices and credit notes to Factus."""

from .code_tables import correction_concept_code, municipality_id
from .credentials import CredentialManager
from .dto import (
    Client,
    Credentials,
    Document,
    DocumentStatus,
    DocumentType,
    EmissionResult,
    LineItem,
    NumberingRange,
    Product,
    ValidationResult,
)
from .errors import (
    AuthenticationError,
    ConfigurationError,
    EmissionError,
    MappingError,
    NumberingError,
    RangeExhaustedError,
)
from .mapper import FieldMapper, NumberingSelection
from .numbering import NumberingAllocator, Reservation
from .reconciler import ResponseReconciler
from .sender import SendOptions, SendResult, TransmissionSender
from .service import EmissionService
from .store import (
    CredentialStore,
    DocumentStore,
    InMemoryCredentialStore,
    InMemoryDocumentStore,
    InMemoryRangeStore,
    RangeStore,
)

__all__ = [
    "correction_concept_code",
    "municipality_id",
    "CredentialManager",
    "Client",
    "Credentials",
    "Document",
    "DocumentStatus",
    "DocumentType",
    "EmissionResult",
    "LineItem",
    "NumberingRange",
    "Product",
    "ValidationResult",
    "AuthenticationError",
    "ConfigurationError",
    "EmissionError",
    "MappingError",
    "NumberingError",
    "RangeExhaustedError",
    "FieldMapper",
    "NumberingSelection",
    "NumberingAllocator",
    "Reservation",
    "ResponseReconciler",
    "SendOptions",
    "SendResult",
    "TransmissionSender",
    "EmissionService",
    "CredentialStore",
    "DocumentStore",
    "InMemoryCredentialStore",
    "InMemoryDocumentStore",
    "InMemoryRangeStore",
    "RangeStore",
]
