"""Orchestration — entry points that load, transition, persist and publish."""
