"""Background workers."""

from .payment_events import PaymentEventReplayWorker, ReplayLimitExceededError  # noqa: F401
