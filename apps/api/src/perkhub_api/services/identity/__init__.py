"""Identity resolution services."""

from .resolver import (  # noqa: F401
    STRATEGY_DOCUMENT_ID,
    STRATEGY_EMAIL,
    STRATEGY_EXTERNAL_AUTH_ID,
    STRATEGY_PROVISIONAL,
    IdentityHint,
    IdentityRepair,
    IdentityResolver,
    IdentitySummary,
    ResolvedIdentity,
)
