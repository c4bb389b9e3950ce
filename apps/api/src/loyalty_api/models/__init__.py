"""SQLAlchemy models package."""

from .customer import TIER_ORDER, Customer, CustomerStatus, CustomerTier  # noqa: F401
from .loyalty import BonusType, PointsTransaction, PointsTransactionType  # noqa: F401
from .order import Bill, Order  # noqa: F401
from .tenant import Tenant  # noqa: F401
