"""PerkHub voucher and entitlement API."""
