"""Persistence interfaces for bookings and recovery tokens.

The orchestrator only talks to these abstractions; ``memory`` backs tests and
local development, ``sql`` and ``redis_tokens`` back production.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime

from bookingflow.models.enums import BookingState
from bookingflow.schemas.booking import Booking, RecoveryToken, TransitionLogEntry


class BookingStore(ABC):
    """Versioned booking storage with atomic compare-and-swap writes."""

    @abstractmethod
    async def get(self, booking_id: str) -> Booking | None:
        """Load a booking by ID, or None."""

    @abstractmethod
    async def find_by_external_ref(self, ref: str) -> Booking | None:
        """Resolve a provider reference to the booking that owns it.

        Matches the current checkout-session ref, the scheduling event ref and
        superseded checkout-session refs.
        """

    @abstractmethod
    async def create(self, booking: Booking, log_entry: TransitionLogEntry) -> Booking:
        """Insert a new booking at version 1.

        Raises:
            DuplicateBookingError: A booking with the same ID exists.
        """

    @abstractmethod
    async def compare_and_swap(
        self,
        booking: Booking,
        expected_version: int,
        log_entry: TransitionLogEntry,
    ) -> Booking:
        """Persist ``booking`` if the stored version is still ``expected_version``.

        The version is bumped and the log entry written in the same atomic
        step. Returns the stored copy.

        Raises:
            ConcurrencyConflictError: The stored version moved on.
            ReferenceConflictError: An external ref is owned by another booking.
            NotFoundError: The booking vanished.
        """

    @abstractmethod
    async def history(self, booking_id: str) -> list[TransitionLogEntry]:
        """Transition log for a booking, oldest first."""

    @abstractmethod
    async def list_stale(
        self,
        states: Iterable[BookingState],
        updated_before: datetime,
        limit: int = 100,
    ) -> list[Booking]:
        """Bookings in ``states`` not updated since ``updated_before``."""


class RecoveryTokenStore(ABC):
    """Storage for hashed recovery tokens with single-use consumption."""

    @abstractmethod
    async def save(self, token: RecoveryToken) -> None: ...

    @abstractmethod
    async def get(self, token_hash: str) -> RecoveryToken | None: ...

    @abstractmethod
    async def consume(self, token_hash: str, used_at: datetime) -> bool:
        """Atomically mark the token used.

        Returns False when the token is unknown or someone else consumed it
        first.
        """

    @abstractmethod
    async def release(self, token_hash: str) -> None:
        """Undo ``consume`` after the redemption transition failed."""
