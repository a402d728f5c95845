"""PostgreSQL BookingStore on SQLAlchemy 2.0 async.

Compare-and-swap is a single ``UPDATE bookings ... WHERE version = :expected``;
zero affected rows means another writer got there first. The transition-log
row is inserted in the same transaction, so a booking change and its audit
entry are committed together or not at all.

Usage:
    from bookingflow.db.engine import async_session_factory
    from bookingflow.storage.sql import SqlBookingStore

    store = SqlBookingStore(async_session_factory)
    booking = await store.get("bk_123")
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from cryptography.exceptions import InvalidTag
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookingflow.errors import (
    ConcurrencyConflictError,
    DuplicateBookingError,
    NotFoundError,
    ReferenceConflictError,
)
from bookingflow.models.booking import BookingRecord
from bookingflow.models.enums import BookingState, PaymentStatus
from bookingflow.models.transition_log import BookingTransitionLog
from bookingflow.schemas.booking import Booking, BookingErrorInfo, TransitionLogEntry
from bookingflow.security.encryption import FieldEncryptor, field_encryptor
from bookingflow.storage.base import BookingStore

logger = logging.getLogger(__name__)


class SqlBookingStore(BookingStore):
    """BookingStore backed by the ``bookings`` and ``booking_transition_log`` tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        encryptor: FieldEncryptor = field_encryptor,
    ) -> None:
        self._session_factory = session_factory
        self._encryptor = encryptor

    async def get(self, booking_id: str) -> Booking | None:
        async with self._session_factory() as session:
            record = await session.get(BookingRecord, booking_id)
            return self._to_domain(record) if record is not None else None

    async def find_by_external_ref(self, ref: str) -> Booking | None:
        stmt = (
            select(BookingRecord)
            .where(
                or_(
                    BookingRecord.external_session_ref == ref,
                    BookingRecord.external_event_ref == ref,
                    BookingRecord.superseded_session_refs.any(ref),
                )
            )
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return self._to_domain(record) if record is not None else None

    async def create(self, booking: Booking, log_entry: TransitionLogEntry) -> Booking:
        stored = booking.model_copy(update={"version": 1})
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    session.add(BookingRecord(**self._to_values(stored)))
                    await session.flush()
                    session.add(self._log_record(log_entry))
            except IntegrityError:
                existing = await session.get(BookingRecord, booking.booking_id)
                if existing is not None:
                    msg = f"booking {booking.booking_id} already exists"
                    raise DuplicateBookingError(msg, booking_id=booking.booking_id) from None
                msg = "external reference already belongs to another booking"
                raise ReferenceConflictError(msg, booking_id=booking.booking_id) from None
        return stored

    async def compare_and_swap(
        self,
        booking: Booking,
        expected_version: int,
        log_entry: TransitionLogEntry,
    ) -> Booking:
        stored = booking.model_copy(update={"version": expected_version + 1})
        values = self._to_values(stored)
        values.pop("booking_id")
        values.pop("created_at")
        if values["payment_intent_ref_encrypted"] is None:
            # Set-once column: never clear a value this process could not decrypt.
            values.pop("payment_intent_ref_encrypted")

        stmt = (
            update(BookingRecord)
            .where(
                BookingRecord.booking_id == booking.booking_id,
                BookingRecord.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        current = await session.scalar(
                            select(BookingRecord.version).where(BookingRecord.booking_id == booking.booking_id)
                        )
                        if current is None:
                            msg = f"booking {booking.booking_id} not found"
                            raise NotFoundError(msg, booking_id=booking.booking_id)
                        msg = f"booking {booking.booking_id} is at version {current}, expected {expected_version}"
                        raise ConcurrencyConflictError(msg, booking_id=booking.booking_id)
                    session.add(self._log_record(log_entry))
            except IntegrityError:
                logger.warning("Reference conflict persisting booking %s", booking.booking_id)
                msg = "external reference already belongs to another booking"
                raise ReferenceConflictError(msg, booking_id=booking.booking_id) from None
        return stored

    async def history(self, booking_id: str) -> list[TransitionLogEntry]:
        stmt = (
            select(BookingTransitionLog)
            .where(BookingTransitionLog.booking_id == booking_id)
            .order_by(BookingTransitionLog.occurred_at, BookingTransitionLog.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [
                TransitionLogEntry(
                    booking_id=row.booking_id,
                    from_state=BookingState(row.from_state) if row.from_state else None,
                    to_state=BookingState(row.to_state),
                    event_type=row.event_type,
                    occurred_at=row.occurred_at,
                    metadata=row.data or {},
                )
                for row in result.scalars().all()
            ]

    async def list_stale(
        self,
        states: Iterable[BookingState],
        updated_before: datetime,
        limit: int = 100,
    ) -> list[Booking]:
        stmt = (
            select(BookingRecord)
            .where(
                BookingRecord.state.in_([s.value for s in states]),
                BookingRecord.updated_at < updated_before,
            )
            .order_by(BookingRecord.updated_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_domain(record) for record in result.scalars().all()]

    # ── Mapping ──────────────────────────────────────────────────────

    def _to_values(self, booking: Booking) -> dict[str, Any]:
        """Column values for ``booking``; the payment intent is encrypted."""
        return {
            "booking_id": booking.booking_id,
            "builder_id": booking.builder_id,
            "client_id": booking.client_id,
            "session_type_id": booking.session_type_id,
            "state": booking.state.value,
            "payment_status": booking.payment_status.value,
            "payment_exempt": booking.payment_exempt,
            "version": booking.version,
            "client_timezone": booking.client_timezone,
            "start_time": booking.start_time,
            "end_time": booking.end_time,
            "external_session_ref": booking.external_session_ref,
            "external_event_ref": booking.external_event_ref,
            "payment_intent_ref_encrypted": self._encryptor.encrypt_optional(booking.payment_intent_ref),
            "superseded_session_refs": list(booking.superseded_session_refs),
            "last_error": booking.last_error.model_dump(mode="json") if booking.last_error else None,
            "cancel_reason": booking.cancel_reason,
            "created_at": booking.created_at,
            "updated_at": booking.updated_at,
        }

    def _to_domain(self, record: BookingRecord) -> Booking:
        return Booking(
            booking_id=record.booking_id,
            builder_id=record.builder_id,
            client_id=record.client_id,
            session_type_id=record.session_type_id,
            state=BookingState(record.state),
            payment_status=PaymentStatus(record.payment_status),
            payment_exempt=record.payment_exempt,
            version=record.version,
            client_timezone=record.client_timezone,
            start_time=record.start_time,
            end_time=record.end_time,
            external_session_ref=record.external_session_ref,
            external_event_ref=record.external_event_ref,
            payment_intent_ref=self._decrypt_intent(record),
            superseded_session_refs=tuple(record.superseded_session_refs or ()),
            last_error=BookingErrorInfo.model_validate(record.last_error) if record.last_error else None,
            cancel_reason=record.cancel_reason,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def _decrypt_intent(self, record: BookingRecord) -> str | None:
        """Decrypt the stored payment intent; an unreadable value must not block the booking."""
        try:
            return self._encryptor.decrypt_optional(record.payment_intent_ref_encrypted)
        except (InvalidTag, ValueError):
            logger.error(
                "Cannot decrypt payment intent of booking %s (ENCRYPTION_KEY changed?)",
                record.booking_id,
            )
            return None

    @staticmethod
    def _log_record(entry: TransitionLogEntry) -> BookingTransitionLog:
        return BookingTransitionLog(
            booking_id=entry.booking_id,
            from_state=entry.from_state.value if entry.from_state else None,
            to_state=entry.to_state.value,
            event_type=entry.event_type,
            occurred_at=entry.occurred_at,
            data=entry.metadata,
        )
