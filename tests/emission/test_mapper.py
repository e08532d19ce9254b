from datetime import date, timedelta
from decimal import Decimal

import pytest

from agents.emission.dto import DocumentType
from agents.emission.errors import DocumentNotFoundError, MappingError
from agents.emission.mapper import FieldMapper, NumberingSelection, consolidate_items, normalize_dates
from agents.emission.numbering import NumberingAllocator
from agents.emission.store import InMemoryDocumentStore, InMemoryRangeStore
from backend.core.config import settings
from tests.emission.factories import (
    NOW,
    TODAY,
    make_client,
    make_credit_note,
    make_invoice,
    make_item,
    make_product,
    make_range,
    submitted_invoice,
)


def _mapper(*documents, ranges=None):
    store = InMemoryDocumentStore(list(documents))
    allocator = NumberingAllocator(InMemoryRangeStore(ranges if ranges is not None else [make_range()]))
    return FieldMapper(store, allocator, today=lambda: TODAY, clock=lambda: NOW)


def test_items_with_same_product_are_consolidated():
    product = make_product(10)
    items = [
        make_item(product, quantity=2, unit_price="100", name="first"),
        make_item(make_product(11), quantity=1),
        make_item(product, quantity=3, unit_price="999", name="second"),
    ]

    merged = consolidate_items(items)

    assert len(merged) == 2
    assert merged[0].product.id == 10
    assert merged[0].quantity == Decimal("5")
    assert merged[0].unit_price == Decimal("100")
    assert merged[0].name == "first"
    assert merged[1].product.id == 11
    # originals untouched
    assert items[0].quantity == Decimal("2")


def test_future_issue_date_is_clamped_to_today():
    issue, due = normalize_dates(TODAY + timedelta(days=3), TODAY + timedelta(days=40), TODAY)
    assert issue == TODAY
    assert due == TODAY + timedelta(days=40)


def test_due_date_before_issue_moves_thirty_days_out():
    issue, due = normalize_dates(TODAY, TODAY - timedelta(days=1), TODAY)
    assert due == TODAY + timedelta(days=30)


def test_due_date_defaults_to_issue_date():
    issue, due = normalize_dates(date(2025, 10, 1), None, TODAY)
    assert issue == due == date(2025, 10, 1)


def test_invoice_payload():
    invoice = make_invoice(
        items=[
            make_item(make_product(10, unit_measure="KG", unspsc_code="50161813"), quantity="2", unit_price="1500.5"),
            make_item(make_product(11, kind="servicio", applies_iva=False), quantity="1", tax_rate=Decimal("0")),
            make_item(make_product(10), quantity="3"),
        ],
        payment_form="credito",
        observations="Pedido 77",
    )
    mapper = _mapper(invoice)

    payload = mapper.map_to_external_payload(1)

    assert payload["numbering_range_id"] == 1
    assert payload["reference_code"] == "SETP-990000203"
    assert payload["payment_form"] == "2"
    assert payload["payment_method_code"] == "1"
    assert payload["operation_type"] == 10
    assert payload["payment_due_date"] == "2025-11-17"
    assert payload["observation"] == "Pedido 77"
    assert payload["send_email"] is False
    assert payload["billing_period"]["start_date"] == "2025-10-18"
    assert payload["establishment"]["name"] == settings.COMPANY_NAME

    customer = payload["customer"]
    assert customer["identification_document_id"] == "3"
    assert customer["identification"] == "1020304050"
    assert customer["names"] == "Ana Torres"
    assert customer["legal_organization_id"] == "2"
    assert customer["tribute_id"] == "21"
    assert customer["municipality_id"] == "149"

    goods, service = payload["items"]
    assert goods["quantity"] == 5.0
    assert goods["price"] == 1500.5
    assert goods["tax_rate"] == "19.00"
    assert goods["unit_measure_id"] == 28
    assert goods["standard_code_id"] == 50161813
    assert goods["is_excluded"] == 0
    assert goods["scheme_id"] == "1"
    assert goods["mandate"] == {"identification_document_id": "3", "identification": "1020304050"}
    assert service["is_excluded"] == 1
    assert service["tax_rate"] == "0.00"
    assert service["scheme_id"] == "0"
    assert service["note"] == "Servicio"


def test_export_invoice_operation_type():
    mapper = _mapper(make_invoice(doc_type=DocumentType.EXPORT_INVOICE), ranges=[])

    payload = mapper.map_to_external_payload(1)

    assert payload["operation_type"] == 20


def test_document_number_takes_precedence_over_numbering():
    mapper = _mapper(make_invoice(number="FV-100"))

    assert mapper.map_to_external_payload(1)["reference_code"] == "FV-100"


def test_explicit_numbering_selection_is_used():
    mapper = _mapper(make_invoice())
    numbering = NumberingSelection(range_id=44, prefix="SETP", consecutive=7, source="reservation")

    payload = mapper.map_to_external_payload(1, numbering)

    assert payload["numbering_range_id"] == 44
    assert payload["reference_code"] == "SETP-7"


def test_falls_back_to_configured_numbering(caplog):
    mapper = _mapper(make_invoice(), ranges=[make_range(lower_bound=1, upper_bound=5, counter=5)])
    caplog.set_level("WARNING")

    selection = mapper.resolve_numbering(DocumentType.INVOICE)

    assert selection.source == "config"
    assert selection.range_id == settings.FACTUS_NUMBERING_RANGE_ID
    assert selection.reference_code == f"{settings.FACTUS_INVOICE_PREFIX}-{settings.FACTUS_DEFAULT_CONSECUTIVE}"
    assert any("Numbering range unavailable" in r.getMessage() for r in caplog.records)


def test_unresolvable_numbering_is_a_mapping_error(monkeypatch):
    monkeypatch.setattr(settings, "FACTUS_NUMBERING_RANGE_ID", 0)
    mapper = _mapper(make_invoice(), ranges=[])

    with pytest.raises(MappingError):
        mapper.map_to_external_payload(1)


def test_credit_note_with_reference():
    original = submitted_invoice(bill_id=203)
    note = make_credit_note(original=original, correction_concept="devolución")
    mapper = _mapper(note)

    payload = mapper.map_to_external_payload(2)

    assert payload["customization_id"] == 20
    assert payload["bill_id"] == 203
    assert payload["correction_concept_code"] == 1
    assert payload["payment_method_code"] == "10"
    assert payload["reference_code"] == f"NC-2-{int(NOW.timestamp() * 1000)}"
    assert "billing_period" not in payload
    assert payload["customer"]["identification_document_id"] == 3
    assert "dv" not in payload["customer"]
    assert payload["items"][0]["quantity"] == 1
    assert isinstance(payload["items"][0]["quantity"], int)


def test_credit_note_bill_id_from_stored_response():
    original = make_invoice(
        status="submitted",
        external_id="SETP1",
        last_response={"body": {"data": {"bill": {"id": 55, "number": "SETP1"}}}},
    )
    mapper = _mapper(make_credit_note(original=original))

    assert mapper.map_to_external_payload(2)["bill_id"] == 55


def test_credit_note_without_reference_uses_billing_period():
    note = make_credit_note(
        client=None,
        billing_period_start=date(2025, 9, 1),
        billing_period_end=date(2025, 9, 30),
        correction_concept=4,
    )
    mapper = _mapper(note)

    payload = mapper.map_to_external_payload(2)

    assert payload["customization_id"] == 22
    assert "bill_id" not in payload
    assert payload["billing_period"]["start_date"] == "2025-09-01"
    assert payload["billing_period"]["end_date"] == "2025-09-30"
    assert payload["correction_concept_code"] == 4
    assert "customer" not in payload


def test_credit_note_items_get_placeholders():
    product = make_product(12, code="", name="")
    mapper = _mapper(make_credit_note(original=submitted_invoice(), items=[make_item(product)]))

    item = mapper.map_to_external_payload(2)["items"][0]

    assert item["code_reference"] == "SIN-CODIGO"
    assert item["name"] == "Producto"


def test_credit_note_customer_address_placeholder():
    client = make_client(address=None, verification_digit="7", identification_type="NIT", person_type="juridica")
    mapper = _mapper(make_credit_note(original=submitted_invoice(), client=client))

    customer = mapper.map_to_external_payload(2)["customer"]

    assert customer["address"] == "Sin dirección"
    assert customer["dv"] == "7"
    assert customer["identification_document_id"] == 6
    assert customer["legal_organization_id"] == "1"


def test_credit_note_for_unsent_invoice_cannot_be_mapped():
    mapper = _mapper(make_credit_note(original=make_invoice()))

    with pytest.raises(MappingError):
        mapper.map_to_external_payload(2)


def test_load_document_errors():
    mapper = _mapper(make_invoice(client=None), make_invoice(2, items=[]))

    with pytest.raises(DocumentNotFoundError):
        mapper.load_document(99)
    with pytest.raises(MappingError):
        mapper.load_document(1)
    with pytest.raises(MappingError):
        mapper.load_document(2)


def test_invoice_payload_without_client_is_a_mapping_error(monkeypatch):
    mapper = _mapper(make_invoice())
    monkeypatch.setattr(mapper, "load_document", lambda document_id: make_invoice(client=None))
    numbering = NumberingSelection(range_id=44, prefix="SETP", consecutive=7, source="reservation")

    with pytest.raises(MappingError, match="Document 1 has no client"):
        mapper.map_to_external_payload(1, numbering)


def test_debit_notes_cannot_be_mapped():
    mapper = _mapper(make_invoice(doc_type=DocumentType.DEBIT_NOTE))

    with pytest.raises(MappingError):
        mapper.map_to_external_payload(1)


def test_validate_reports_every_problem():
    invoice = make_invoice(
        client=None,
        issue_date=TODAY + timedelta(days=2),
        items=[make_item(quantity="0"), make_item(unit_price="-1")],
    )
    result = _mapper(invoice).validate(1)

    assert result.valid is False
    assert result.errors == [
        "The document must have a client",
        "Item 1: quantity must be greater than 0",
        "Item 2: unit price must be greater than 0",
    ]
    assert len(result.warnings) == 1
    assert "in the future" in result.warnings[0]


def test_validate_missing_items_and_document():
    mapper = _mapper(make_invoice(items=[]))

    assert mapper.validate(1).errors == ["The document must have at least one item"]
    assert mapper.validate(9).errors == ["Document 9 not found"]


def test_validate_credit_note_requirements():
    note = make_credit_note(original=make_invoice(), correction_concept=None)

    result = _mapper(note).validate(2)

    assert result.errors == [
        "The referenced invoice has not been emitted to Factus (missing bill id)",
        "A correction concept is required",
    ]


def test_validate_accepts_a_complete_invoice():
    result = _mapper(make_invoice()).validate(1)

    assert result.valid is True
    assert result.to_dict() == {"valid": True, "errors": [], "warnings": []}
