"""Subscription reconciliation services."""

from .events import PaymentEvent, PaymentEventKind, ReconciliationOutcome, ReconciliationResult  # noqa: F401
from .intervals import BillingInterval, add_interval  # noqa: F401
from .plans import PlanDetails, PlanResolver  # noqa: F401
from .reconciler import EntitlementReconciler, IngestResult, PartnerAssignment  # noqa: F401
