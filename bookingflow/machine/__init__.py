"""Booking state machine — transition table and the pure transition function."""

from bookingflow.machine.core import Transition, TransitionContext, TransitionError, transition

__all__ = ["Transition", "TransitionContext", "TransitionError", "transition"]
