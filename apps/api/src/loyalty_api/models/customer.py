from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, Enum as SqlEnum, ForeignKey, Index, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_api.db.base import Base


class CustomerStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    BLOCKED = "BLOCKED"


class CustomerTier(str, Enum):
    """Loyalty ranks in ascending order."""

    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"

    @property
    def rank(self) -> int:
        return TIER_ORDER.index(self)


TIER_ORDER = (CustomerTier.BRONZE, CustomerTier.SILVER, CustomerTier.GOLD, CustomerTier.PLATINUM)


class Customer(Base):
    """Loyalty member record; points counters are written by the ledger only."""

    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_tenant_status", "tenant_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    status = Column(
        SqlEnum(CustomerStatus, name="customer_status"),
        nullable=False,
        default=CustomerStatus.ACTIVE,
        server_default=CustomerStatus.ACTIVE.value,
    )
    tier = Column(
        SqlEnum(CustomerTier, name="customer_tier"),
        nullable=False,
        default=CustomerTier.BRONZE,
        server_default=CustomerTier.BRONZE.value,
    )
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    points_earned_lifetime = Column(Integer, nullable=False, default=0, server_default="0")
    points_redeemed_lifetime = Column(Integer, nullable=False, default=0, server_default="0")
    points_expired_lifetime = Column(Integer, nullable=False, default=0, server_default="0")
    points_adjusted_net = Column(Integer, nullable=False, default=0, server_default="0")
    total_spent = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    total_visits = Column(Integer, nullable=False, default=0, server_default="0")
    average_order_value = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=1, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    tenant = relationship("Tenant", back_populates="customers")
    orders = relationship("Order", back_populates="customer")
    points_transactions = relationship("PointsTransaction", back_populates="customer")
