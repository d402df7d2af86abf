"""SQLAlchemy ORM models for the credit ledger.

All models are exported from this module for convenient imports:
    from app.models import CreditGrant, BurnEvent, ...

- base.py: Base (declarative base)
- credits.py: CreditGrant, BurnEvent, SettlementFailure
"""

from app.models.base import Base
from app.models.credits import (
    CATEGORY_PRIORITY,
    GRANT_CATEGORIES,
    LENGTH_BUCKETS,
    BurnEvent,
    CreditGrant,
    GrantCategory,
    LengthBucket,
    SettlementFailure,
)

__all__ = [
    "CATEGORY_PRIORITY",
    "GRANT_CATEGORIES",
    "LENGTH_BUCKETS",
    "Base",
    "BurnEvent",
    "CreditGrant",
    "GrantCategory",
    "LengthBucket",
    "SettlementFailure",
]
