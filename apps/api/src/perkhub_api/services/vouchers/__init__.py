"""Voucher lifecycle services."""

from .state_machine import VoucherStateMachine, VoucherValidation, VoucherView  # noqa: F401
from .throttle import ThrottleGate  # noqa: F401
