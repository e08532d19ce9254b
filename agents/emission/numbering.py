"""Numbering allocator for document ranges issued by the tax authority."""

from __future__ import annotations

from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from heapq import heappop, heappush
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import anyio

from backend.core.config import settings
from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_numbering_reservations

from .dto import DocumentType, NumberingRange
from .errors import (
    NoActiveRangeError,
    RangeExhaustedError,
    RangeNotFoundError,
    ReservationNotFoundError,
    ReservationStateError,
)
from .store import RangeStore

logger = get_logger(__name__)

HISTORY_SIZE = 1000

_ACTIONS = {"committed": "commit", "aborted": "abort", "burned": "burn"}


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


def is_exhausted(numbering_range: NumberingRange) -> bool:
    return numbering_range.counter >= numbering_range.upper_bound


@dataclass
class Reservation:
    reservation_id: str
    range_id: int
    wire_range_id: int
    doc_type: DocumentType
    prefix: str
    consecutive: int
    created_at: datetime
    status: str = "reserved"

    @property
    def reference_code(self) -> str:
        return f"{self.prefix}-{self.consecutive}"


class NumberingAllocator:
    """Hands out consecutive numbers from the active range of a document type.

    Numbers are reserved before transmission and settled afterwards:

    * committed: the external service confirmed the document.
    * aborted: nothing reached the service (or it rejected the document), the
      number goes back to a per-range pool and is handed out again before the
      counter advances.
    * burned: the service may have seen the number without confirming it
      (timeout, 5xx). It is never handed out again and leaves a gap.

    Only open reservations are kept in full; settled ones and the audit log
    are bounded by ``history_size``.
    """

    def __init__(
        self,
        store: RangeStore,
        *,
        clock: Callable[[], datetime] | None = None,
        warning_remaining: int | None = None,
        critical_remaining: int | None = None,
        history_size: int = HISTORY_SIZE,
    ) -> None:
        self._store = store
        self._clock = clock or _default_clock
        self._warning_remaining = (
            settings.NUMBERING_WARNING_REMAINING if warning_remaining is None else warning_remaining
        )
        self._critical_remaining = (
            settings.NUMBERING_CRITICAL_REMAINING if critical_remaining is None else critical_remaining
        )
        self._locks: Dict[int, anyio.Lock] = {}
        self._available: Dict[int, List[int]] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._settled: "OrderedDict[str, Reservation]" = OrderedDict()
        self._history_size = history_size
        self._reservation_counter = 0
        self.audit_log: Deque[Dict[str, object]] = deque(maxlen=history_size)

    # Range selection

    def get_active_range(self, doc_type: DocumentType | str) -> NumberingRange:
        numbering_range = self._select_active(DocumentType(doc_type))
        if is_exhausted(numbering_range):
            raise RangeExhaustedError(
                f"Numbering range {numbering_range.prefix} ({numbering_range.id}) is exhausted"
            )
        return numbering_range

    def get_next_consecutive(self, range_id: int) -> int:
        """Return the current counter (not yet consumed)."""
        numbering_range = self._require(range_id)
        if is_exhausted(numbering_range):
            raise RangeExhaustedError(f"Numbering range {range_id} is exhausted")
        return numbering_range.counter

    async def increment_consecutive(self, range_id: int) -> int:
        async with self._lock_for(range_id):
            return await anyio.to_thread.run_sync(self._increment, range_id)

    def _increment(self, range_id: int) -> int:
        if is_exhausted(self._require(range_id)):
            raise RangeExhaustedError(f"Numbering range {range_id} is exhausted")
        return self._store.increment_counter(range_id)

    def _select_active(self, doc_type: DocumentType) -> NumberingRange:
        candidates = [r for r in self._store.list_ranges(doc_type) if r.active]
        if not candidates:
            raise NoActiveRangeError(f"No active numbering range for {doc_type.value}")
        selected = max(candidates, key=lambda r: (r.created_at, r.id))
        if len(candidates) > 1:
            logger.warning(
                "Several active numbering ranges, using the most recent",
                extra={
                    "doc_type": doc_type.value,
                    "range_ids": [r.id for r in candidates],
                    "selected_range_id": selected.id,
                },
            )
        return selected

    # Reservations

    async def reserve(self, doc_type: DocumentType | str) -> Reservation:
        doc_type = DocumentType(doc_type)
        # Range stores may be backed by a database: run them in a worker thread
        numbering_range = await anyio.to_thread.run_sync(self._select_active, doc_type)
        async with self._lock_for(numbering_range.id):
            available = self._available.setdefault(numbering_range.id, [])
            if available:
                consecutive = heappop(available)
            else:
                numbering_range, consecutive = await anyio.to_thread.run_sync(self._advance, doc_type)

        self._reservation_counter += 1
        reservation = Reservation(
            reservation_id=f"res-{self._reservation_counter:08d}",
            range_id=numbering_range.id,
            wire_range_id=numbering_range.wire_id,
            doc_type=doc_type,
            prefix=numbering_range.prefix,
            consecutive=consecutive,
            created_at=self._clock(),
        )
        self._reservations[reservation.reservation_id] = reservation
        self._log("reserve", reservation)
        return reservation

    def _advance(self, doc_type: DocumentType) -> Tuple[NumberingRange, int]:
        numbering_range = self.get_active_range(doc_type)
        return numbering_range, self._store.increment_counter(numbering_range.id) - 1

    def commit(self, reservation_id: str) -> str:
        reservation = self._get_reservation(reservation_id)
        if reservation.status in ("aborted", "burned"):
            raise ReservationStateError(f"cannot commit {reservation.status} reservation")
        if reservation.status != "committed":
            self._settle(reservation, "committed")
        return reservation.reference_code

    def abort(self, reservation_id: str) -> None:
        reservation = self._get_reservation(reservation_id)
        if reservation.status != "reserved":
            raise ReservationStateError(f"cannot abort {reservation.status} reservation")
        heappush(self._available.setdefault(reservation.range_id, []), reservation.consecutive)
        self._settle(reservation, "aborted")

    def burn(self, reservation_id: str) -> None:
        reservation = self._get_reservation(reservation_id)
        if reservation.status != "reserved":
            raise ReservationStateError(f"cannot burn {reservation.status} reservation")
        self._settle(reservation, "burned")
        logger.warning(
            "Number retired without confirmation",
            extra={
                "range_id": reservation.range_id,
                "reference_code": reservation.reference_code,
            },
        )

    def open_reservations(self) -> List[Reservation]:
        return list(self._reservations.values())

    def _settle(self, reservation: Reservation, status: str) -> None:
        reservation.status = status
        self._reservations.pop(reservation.reservation_id, None)
        self._settled[reservation.reservation_id] = reservation
        while len(self._settled) > self._history_size:
            self._settled.popitem(last=False)
        self._log(_ACTIONS[status], reservation)

    # Range administration

    def list_ranges(self, doc_type: DocumentType | str | None = None) -> List[NumberingRange]:
        return self._store.list_ranges(DocumentType(doc_type) if doc_type else None)

    def create_range(
        self,
        doc_type: DocumentType | str,
        prefix: str,
        lower_bound: int,
        upper_bound: int,
        *,
        external_id: Optional[int] = None,
        resolution: Optional[str] = None,
    ) -> NumberingRange:
        if not prefix:
            raise ValueError("prefix is required")
        if lower_bound < 0 or upper_bound < lower_bound:
            raise ValueError("bounds must satisfy 0 <= lower_bound <= upper_bound")
        numbering_range = self._store.add_range(
            NumberingRange(
                id=0,
                doc_type=DocumentType(doc_type),
                prefix=prefix,
                lower_bound=lower_bound,
                upper_bound=upper_bound,
                counter=lower_bound,
                active=True,
                external_id=external_id,
                resolution=resolution,
                created_at=self._clock(),
            )
        )
        logger.info(
            "Numbering range created",
            extra={"range_id": numbering_range.id, "doc_type": numbering_range.doc_type.value},
        )
        return numbering_range

    def deactivate_range(self, range_id: int) -> NumberingRange:
        self._require(range_id)
        self._available.pop(range_id, None)
        return self._store.update_range(range_id, {"active": False})

    def validate_number(self, prefix: str, consecutive: int) -> bool:
        """Whether ``prefix``/``consecutive`` falls inside a known range."""
        return any(
            r.prefix == prefix and r.lower_bound <= consecutive <= r.upper_bound
            for r in self._store.list_ranges()
        )

    def get_range_stats(self, range_id: int) -> Dict[str, Any]:
        numbering_range = self._require(range_id)
        total = numbering_range.upper_bound - numbering_range.lower_bound + 1
        used = numbering_range.counter - numbering_range.lower_bound
        remaining = numbering_range.upper_bound - numbering_range.counter + 1
        utilization = (Decimal(used) * 100 / Decimal(total)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
        if remaining < self._critical_remaining:
            tier = "CRITICAL"
        elif remaining < self._warning_remaining:
            tier = "WARNING"
        else:
            tier = "OK"
        return {
            "range_id": numbering_range.id,
            "doc_type": numbering_range.doc_type.value,
            "prefix": numbering_range.prefix,
            "lower_bound": numbering_range.lower_bound,
            "upper_bound": numbering_range.upper_bound,
            "counter": numbering_range.counter,
            "total": total,
            "used": used,
            "remaining": remaining,
            "utilization_pct": float(utilization),
            "status": tier,
            "active": numbering_range.active,
        }

    def _lock_for(self, range_id: int) -> anyio.Lock:
        lock = self._locks.get(range_id)
        if lock is None:
            lock = self._locks[range_id] = anyio.Lock()
        return lock

    def _require(self, range_id: int) -> NumberingRange:
        numbering_range = self._store.get_range(range_id)
        if numbering_range is None:
            raise RangeNotFoundError(f"Numbering range {range_id} not found")
        return numbering_range

    def _get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id) or self._settled.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    def _log(self, action: str, reservation: Reservation) -> None:
        increment_numbering_reservations(action)
        self.audit_log.append(
            {
                "action": action,
                "reservation_id": reservation.reservation_id,
                "range_id": reservation.range_id,
                "doc_type": reservation.doc_type.value,
                "consecutive": reservation.consecutive,
                "status": reservation.status,
                "timestamp": self._clock(),
            }
        )
