"""Points ledger models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_api.db.base import Base


class PointsTransactionType(str, Enum):
    """Ledger event kinds; the sign of ``points`` follows the kind."""

    EARN = "EARN"
    REDEEM = "REDEEM"
    BONUS = "BONUS"
    EXPIRE = "EXPIRE"
    ADJUST = "ADJUST"


class BonusType(str, Enum):
    BIRTHDAY = "BIRTHDAY"
    MILESTONE = "MILESTONE"
    MANUAL = "MANUAL"
    WELCOME = "WELCOME"


class PointsTransaction(Base):
    """Append-only ledger row. Only ``expires_at`` is ever cleared, by the expiry sweep."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        Index("ix_points_transactions_customer_created", "customer_id", "created_at"),
        Index("ix_points_transactions_tenant_type_expires", "tenant_id", "type", "expires_at"),
        Index("ix_points_transactions_customer_bonus", "customer_id", "bonus_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    type = Column(SqlEnum(PointsTransactionType, name="points_transaction_type"), nullable=False)
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    bill_id = Column(UUID(as_uuid=True), ForeignKey("bills.id", ondelete="SET NULL"), nullable=True)
    order_amount = Column(Numeric(12, 2), nullable=True)
    multiplier = Column(Numeric(6, 3), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    bonus_type = Column(SqlEnum(BonusType, name="points_bonus_type"), nullable=True)
    milestone_visit_number = Column(Integer, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    reason = Column(Text, nullable=True)
    adjusted_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    customer = relationship("Customer", back_populates="points_transactions")
