"""bookingflow — booking lifecycle state machine with webhook ingestion and recovery tokens."""

__version__ = "0.1.0"
