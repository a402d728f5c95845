"""In-memory stores for tests and local development.

A single asyncio.Lock serializes writes, which gives the same
compare-and-swap semantics as the SQL store within one process.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime

from bookingflow.errors import (
    ConcurrencyConflictError,
    DuplicateBookingError,
    NotFoundError,
    ReferenceConflictError,
)
from bookingflow.models.enums import BookingState
from bookingflow.schemas.booking import Booking, RecoveryToken, TransitionLogEntry
from bookingflow.storage.base import BookingStore, RecoveryTokenStore


def _refs(booking: Booking) -> set[str]:
    refs = set(booking.superseded_session_refs)
    if booking.external_session_ref:
        refs.add(booking.external_session_ref)
    if booking.external_event_ref:
        refs.add(booking.external_event_ref)
    return refs


class InMemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        self._bookings: dict[str, Booking] = {}
        self._refs: dict[str, str] = {}
        self._log: dict[str, list[TransitionLogEntry]] = {}
        self._lock = asyncio.Lock()

    async def get(self, booking_id: str) -> Booking | None:
        return self._bookings.get(booking_id)

    async def find_by_external_ref(self, ref: str) -> Booking | None:
        booking_id = self._refs.get(ref)
        return self._bookings.get(booking_id) if booking_id else None

    async def create(self, booking: Booking, log_entry: TransitionLogEntry) -> Booking:
        async with self._lock:
            if booking.booking_id in self._bookings:
                msg = f"booking {booking.booking_id} already exists"
                raise DuplicateBookingError(msg, booking_id=booking.booking_id)
            self._check_refs(booking)
            stored = booking.model_copy(update={"version": 1})
            self._bookings[stored.booking_id] = stored
            self._index(stored)
            self._log[stored.booking_id] = [log_entry]
            return stored

    async def compare_and_swap(
        self,
        booking: Booking,
        expected_version: int,
        log_entry: TransitionLogEntry,
    ) -> Booking:
        async with self._lock:
            current = self._bookings.get(booking.booking_id)
            if current is None:
                msg = f"booking {booking.booking_id} not found"
                raise NotFoundError(msg, booking_id=booking.booking_id)
            if current.version != expected_version:
                msg = f"booking {booking.booking_id} is at version {current.version}, expected {expected_version}"
                raise ConcurrencyConflictError(msg, booking_id=booking.booking_id)
            self._check_refs(booking)

            stored = booking.model_copy(update={"version": expected_version + 1})
            self._bookings[stored.booking_id] = stored
            self._index(stored)
            self._log.setdefault(stored.booking_id, []).append(log_entry)
            return stored

    async def history(self, booking_id: str) -> list[TransitionLogEntry]:
        return list(self._log.get(booking_id, []))

    async def list_stale(
        self,
        states: Iterable[BookingState],
        updated_before: datetime,
        limit: int = 100,
    ) -> list[Booking]:
        wanted = set(states)
        stale = [
            b for b in self._bookings.values()
            if b.state in wanted and b.updated_at < updated_before
        ]
        stale.sort(key=lambda b: b.updated_at)
        return stale[:limit]

    def _check_refs(self, booking: Booking) -> None:
        for ref in _refs(booking):
            owner = self._refs.get(ref)
            if owner is not None and owner != booking.booking_id:
                msg = f"external reference already belongs to booking {owner}"
                raise ReferenceConflictError(msg, booking_id=booking.booking_id)

    def _index(self, booking: Booking) -> None:
        for ref in _refs(booking):
            self._refs[ref] = booking.booking_id


class InMemoryRecoveryTokenStore(RecoveryTokenStore):
    def __init__(self) -> None:
        self._tokens: dict[str, RecoveryToken] = {}
        self._lock = asyncio.Lock()

    async def save(self, token: RecoveryToken) -> None:
        self._tokens[token.token_hash] = token

    async def get(self, token_hash: str) -> RecoveryToken | None:
        return self._tokens.get(token_hash)

    async def consume(self, token_hash: str, used_at: datetime) -> bool:
        async with self._lock:
            token = self._tokens.get(token_hash)
            if token is None or token.used_at is not None:
                return False
            self._tokens[token_hash] = token.model_copy(update={"used_at": used_at})
            return True

    async def release(self, token_hash: str) -> None:
        async with self._lock:
            token = self._tokens.get(token_hash)
            if token is not None:
                self._tokens[token_hash] = token.model_copy(update={"used_at": None})
