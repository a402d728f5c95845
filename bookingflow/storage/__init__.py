"""Booking and recovery-token persistence."""

from bookingflow.storage.base import BookingStore, RecoveryTokenStore
from bookingflow.storage.memory import InMemoryBookingStore, InMemoryRecoveryTokenStore

__all__ = ["BookingStore", "InMemoryBookingStore", "InMemoryRecoveryTokenStore", "RecoveryTokenStore"]
