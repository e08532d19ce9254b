"""SQLAlchemy Core implementations of the emission store contracts.

Tables are created by the Alembic migration in ``ops/alembic``; ``create_schema``
exists for local runs and tests against SQLite.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy import MetaData, Table, insert, select, update
from sqlalchemy.engine import Connection, Engine

from agents.emission.dto import (
    Client,
    Credentials,
    Document,
    DocumentStatus,
    DocumentType,
    LineItem,
    NumberingRange,
    Product,
)
from agents.emission.errors import ConfigurationError, DocumentNotFoundError, RangeNotFoundError
from agents.emission.store import check_document_update
from backend.core.config import settings

_METADATA = MetaData()

CREDENTIALS_ROW_ID = 1


def get_tables(metadata: MetaData) -> Dict[str, Table]:
    clients = Table(
        "clients",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("identification_type", sa.String(8), nullable=False),
        sa.Column("identification_number", sa.String(32), nullable=False),
        sa.Column("full_name", sa.Text, nullable=False),
        sa.Column("person_type", sa.String(16), nullable=False, server_default="natural"),
        sa.Column("tax_regime", sa.String(64)),
        sa.Column("verification_digit", sa.String(2)),
        sa.Column("company", sa.Text),
        sa.Column("trade_name", sa.Text),
        sa.Column("address", sa.Text),
        sa.Column("email", sa.Text),
        sa.Column("phone", sa.String(32)),
        sa.Column("city_code", sa.String(8)),
        extend_existing=True,
    )
    products = Table(
        "products",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("code", sa.String(64), nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("unit_measure", sa.String(8), nullable=False, server_default="UND"),
        sa.Column("kind", sa.String(16), nullable=False, server_default="producto"),
        sa.Column("applies_iva", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("unspsc_code", sa.String(16)),
        extend_existing=True,
    )
    documents = Table(
        "documents",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("doc_type", sa.String(16), nullable=False),
        sa.Column("issue_date", sa.Date, nullable=False),
        sa.Column("due_date", sa.Date),
        sa.Column("client_id", sa.Integer, sa.ForeignKey("clients.id")),
        sa.Column("original_document_id", sa.Integer, sa.ForeignKey("documents.id")),
        sa.Column("number", sa.String(64)),
        sa.Column("prefix", sa.String(16)),
        sa.Column("consecutive", sa.Integer),
        sa.Column("operation_type", sa.String(32)),
        sa.Column("payment_form", sa.String(32)),
        sa.Column("payment_method", sa.String(32)),
        sa.Column("observations", sa.Text, nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("external_id", sa.String(64)),
        sa.Column("external_bill_id", sa.Integer),
        sa.Column("cufe", sa.Text),
        sa.Column("qr", sa.Text),
        sa.Column("public_url", sa.Text),
        sa.Column("pdf_url", sa.Text),
        sa.Column("xml_url", sa.Text),
        sa.Column("attempt_counter", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column("last_response", sa.JSON),
        sa.Column("errors", sa.JSON),
        sa.Column("submitted_at", sa.DateTime(timezone=True)),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("correction_concept", sa.String(32)),
        sa.Column("billing_period_start", sa.Date),
        sa.Column("billing_period_end", sa.Date),
        extend_existing=True,
    )
    document_items = Table(
        "document_items",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "document_id",
            sa.Integer,
            sa.ForeignKey("documents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 4), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 2), nullable=False),
        sa.Column("discount_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("code", sa.String(64)),
        sa.Column("name", sa.Text),
        extend_existing=True,
    )
    numbering_ranges = Table(
        "numbering_ranges",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("doc_type", sa.String(16), nullable=False),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("lower_bound", sa.Integer, nullable=False),
        sa.Column("upper_bound", sa.Integer, nullable=False),
        sa.Column("counter", sa.Integer, nullable=False),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("external_id", sa.Integer),
        sa.Column("resolution", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        extend_existing=True,
    )
    emission_credentials = Table(
        "emission_credentials",
        metadata,
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("base_url", sa.Text, nullable=False),
        sa.Column("client_id", sa.Text, nullable=False),
        sa.Column("client_secret", sa.Text, nullable=False),
        sa.Column("username", sa.Text, nullable=False),
        sa.Column("password", sa.Text, nullable=False),
        sa.Column("environment", sa.String(16), nullable=False, server_default="sandbox"),
        sa.Column("access_token", sa.Text),
        sa.Column("token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("refresh_token", sa.Text),
        extend_existing=True,
    )
    return {
        "clients": clients,
        "products": products,
        "documents": documents,
        "document_items": document_items,
        "numbering_ranges": numbering_ranges,
        "emission_credentials": emission_credentials,
    }


TABLES = get_tables(_METADATA)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create (and cache) the SQLAlchemy engine for the emission tables."""
    return sa.create_engine(settings.database_url, future=True)


def create_schema(engine: Engine) -> None:
    _METADATA.create_all(engine)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; stored values are always UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _db_value(key: str, value: Any) -> Any:
    if isinstance(value, (DocumentStatus, DocumentType)):
        return value.value
    if key == "correction_concept" and value is not None:
        return str(value)
    return value


class SqlDocumentStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._t = TABLES

    def get_document(self, document_id: int) -> Optional[Document]:
        with self._engine.begin() as conn:
            return self._load(conn, document_id, with_original=True)

    def update_document(self, document_id: int, changes: Mapping[str, Any]) -> Document:
        documents = self._t["documents"]
        with self._engine.begin() as conn:
            current = self._load(conn, document_id, with_original=False)
            if current is None:
                raise DocumentNotFoundError(document_id)
            check_document_update(current, changes)
            conn.execute(
                update(documents)
                .where(documents.c.id == document_id)
                .values({key: _db_value(key, value) for key, value in changes.items()})
            )
        updated = self.get_document(document_id)
        if updated is None:
            raise DocumentNotFoundError(document_id)
        return updated

    def add(self, document: Document) -> Document:
        """Insert a document with its client, products and items."""
        t = self._t
        with self._engine.begin() as conn:
            if document.client is not None:
                self._ensure_client(conn, document.client)
            for item in document.items:
                self._ensure_product(conn, item.product)
            conn.execute(
                insert(t["documents"]).values(
                    id=document.id,
                    doc_type=document.doc_type.value,
                    issue_date=document.issue_date,
                    due_date=document.due_date,
                    client_id=document.client.id if document.client else None,
                    original_document_id=document.original.id if document.original else None,
                    number=document.number,
                    prefix=document.prefix,
                    consecutive=document.consecutive,
                    operation_type=document.operation_type,
                    payment_form=document.payment_form,
                    payment_method=document.payment_method,
                    observations=document.observations,
                    status=document.status.value,
                    external_id=document.external_id,
                    external_bill_id=document.external_bill_id,
                    attempt_counter=document.attempt_counter,
                    last_response=document.last_response,
                    errors=document.errors,
                    correction_concept=_db_value("correction_concept", document.correction_concept),
                    billing_period_start=document.billing_period_start,
                    billing_period_end=document.billing_period_end,
                )
            )
            for position, item in enumerate(document.items):
                conn.execute(
                    insert(t["document_items"]).values(
                        document_id=document.id,
                        position=position,
                        product_id=item.product.id,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                        discount_rate=item.discount_rate,
                        tax_rate=item.tax_rate,
                        code=item.code,
                        name=item.name,
                    )
                )
        return document

    def _ensure_client(self, conn: Connection, client: Client) -> None:
        clients = self._t["clients"]
        if conn.execute(select(clients.c.id).where(clients.c.id == client.id)).first():
            return
        conn.execute(insert(clients).values(**client.__dict__))

    def _ensure_product(self, conn: Connection, product: Product) -> None:
        products = self._t["products"]
        if conn.execute(select(products.c.id).where(products.c.id == product.id)).first():
            return
        conn.execute(insert(products).values(**product.__dict__))

    def _load(self, conn: Connection, document_id: int, *, with_original: bool) -> Optional[Document]:
        t = self._t
        documents = t["documents"]
        row = conn.execute(select(documents).where(documents.c.id == document_id)).first()
        if row is None:
            return None

        client = None
        if row.client_id is not None:
            client_row = conn.execute(
                select(t["clients"]).where(t["clients"].c.id == row.client_id)
            ).first()
            if client_row is not None:
                client = Client(**client_row._asdict())

        items_table, products = t["document_items"], t["products"]
        item_rows = conn.execute(
            select(items_table, products.c.code.label("product_code"), products.c.name.label("product_name"),
                   products.c.unit_measure, products.c.kind, products.c.applies_iva, products.c.unspsc_code)
            .join(products, products.c.id == items_table.c.product_id)
            .where(items_table.c.document_id == document_id)
            .order_by(items_table.c.position)
        ).fetchall()
        items = [
            LineItem(
                product=Product(
                    id=r.product_id,
                    code=r.product_code,
                    name=r.product_name,
                    unit_measure=r.unit_measure,
                    kind=r.kind,
                    applies_iva=bool(r.applies_iva),
                    unspsc_code=r.unspsc_code,
                ),
                quantity=Decimal(r.quantity),
                unit_price=Decimal(r.unit_price),
                discount_rate=Decimal(r.discount_rate),
                tax_rate=Decimal(r.tax_rate),
                code=r.code,
                name=r.name,
            )
            for r in item_rows
        ]

        original = None
        if with_original and row.original_document_id is not None:
            original = self._load(conn, row.original_document_id, with_original=False)

        return Document(
            id=row.id,
            doc_type=DocumentType(row.doc_type),
            issue_date=row.issue_date,
            due_date=row.due_date,
            client=client,
            items=items,
            number=row.number,
            prefix=row.prefix,
            consecutive=row.consecutive,
            operation_type=row.operation_type,
            payment_form=row.payment_form,
            payment_method=row.payment_method,
            observations=row.observations or "",
            status=DocumentStatus(row.status),
            external_id=row.external_id,
            external_bill_id=row.external_bill_id,
            cufe=row.cufe,
            qr=row.qr,
            public_url=row.public_url,
            pdf_url=row.pdf_url,
            xml_url=row.xml_url,
            attempt_counter=row.attempt_counter,
            last_response=row.last_response,
            errors=list(row.errors or []),
            submitted_at=_aware(row.submitted_at),
            last_attempt_at=_aware(row.last_attempt_at),
            original=original,
            correction_concept=row.correction_concept,
            billing_period_start=row.billing_period_start,
            billing_period_end=row.billing_period_end,
        )


class SqlRangeStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._table = TABLES["numbering_ranges"]

    def list_ranges(self, doc_type: Optional[DocumentType] = None) -> List[NumberingRange]:
        query = select(self._table).order_by(self._table.c.id)
        if doc_type is not None:
            query = query.where(self._table.c.doc_type == DocumentType(doc_type).value)
        with self._engine.begin() as conn:
            return [self._to_range(row) for row in conn.execute(query).fetchall()]

    def get_range(self, range_id: int) -> Optional[NumberingRange]:
        with self._engine.begin() as conn:
            row = conn.execute(select(self._table).where(self._table.c.id == range_id)).first()
        return self._to_range(row) if row else None

    def add_range(self, numbering_range: NumberingRange) -> NumberingRange:
        with self._engine.begin() as conn:
            result = conn.execute(
                insert(self._table).values(
                    doc_type=numbering_range.doc_type.value,
                    prefix=numbering_range.prefix,
                    lower_bound=numbering_range.lower_bound,
                    upper_bound=numbering_range.upper_bound,
                    counter=numbering_range.counter,
                    active=numbering_range.active,
                    external_id=numbering_range.external_id,
                    resolution=numbering_range.resolution,
                    created_at=numbering_range.created_at,
                )
            )
            new_id = result.inserted_primary_key[0]
        stored = self.get_range(new_id)
        if stored is None:
            raise RangeNotFoundError(f"Numbering range {new_id} not found after insert")
        return stored

    def update_range(self, range_id: int, changes: Mapping[str, Any]) -> NumberingRange:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(self._table)
                .where(self._table.c.id == range_id)
                .values({key: _db_value(key, value) for key, value in changes.items()})
            )
            if result.rowcount == 0:
                raise RangeNotFoundError(f"Numbering range {range_id} not found")
        stored = self.get_range(range_id)
        if stored is None:
            raise RangeNotFoundError(f"Numbering range {range_id} not found")
        return stored

    def increment_counter(self, range_id: int) -> int:
        with self._engine.begin() as conn:
            result = conn.execute(
                update(self._table)
                .where(self._table.c.id == range_id)
                .values(counter=self._table.c.counter + 1)
            )
            if result.rowcount == 0:
                raise RangeNotFoundError(f"Numbering range {range_id} not found")
            return conn.execute(
                select(self._table.c.counter).where(self._table.c.id == range_id)
            ).scalar_one()

    @staticmethod
    def _to_range(row: Any) -> NumberingRange:
        return NumberingRange(
            id=row.id,
            doc_type=DocumentType(row.doc_type),
            prefix=row.prefix,
            lower_bound=row.lower_bound,
            upper_bound=row.upper_bound,
            counter=row.counter,
            active=bool(row.active),
            external_id=row.external_id,
            resolution=row.resolution,
            created_at=_aware(row.created_at),
        )


class SqlCredentialStore:
    """Single-row credential record (``id = 1``).

    With ``initial`` set, a missing row is seeded from it on first load.
    """

    def __init__(self, engine: Engine, initial: Optional[Callable[[], Credentials]] = None) -> None:
        self._engine = engine
        self._table = TABLES["emission_credentials"]
        self._initial = initial

    def load(self) -> Credentials:
        with self._engine.begin() as conn:
            row = conn.execute(
                select(self._table).where(self._table.c.id == CREDENTIALS_ROW_ID)
            ).first()
        if row is None:
            if self._initial is None:
                raise ConfigurationError("Credential configuration not found")
            credentials = self._initial()
            self.save(credentials)
            return credentials
        values = row._asdict()
        values.pop("id")
        values["token_expires_at"] = _aware(values["token_expires_at"])
        return Credentials(**values)

    def save(self, credentials: Credentials) -> None:
        values = dict(credentials.__dict__)
        with self._engine.begin() as conn:
            exists = conn.execute(
                select(self._table.c.id).where(self._table.c.id == CREDENTIALS_ROW_ID)
            ).first()
            if exists:
                conn.execute(
                    update(self._table).where(self._table.c.id == CREDENTIALS_ROW_ID).values(**values)
                )
            else:
                conn.execute(insert(self._table).values(id=CREDENTIALS_ROW_ID, **values))
