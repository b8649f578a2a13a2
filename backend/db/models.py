"""
Devoluções Console Database Models

Tables:
  1. integration_accounts  - Marketplace seller accounts (account scope)
  2. devolucoes_avancadas  - Return/claim records with enrichment columns

Records are written by the upstream ingestion process. This service only
reads them and mutates them through the enrichment endpoint or explicit
user actions (mark-read, priority change, seller-action flag).
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base

RETURN_STATUSES = ("opened", "in_process", "waiting_seller", "closed", "cancelled")
PRIORITY_LEVELS = ("critical", "high", "medium", "low")


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Integration accounts ───────────────────────────────────────────────


class IntegrationAccount(Base):
    __tablename__ = "integration_accounts"

    account_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False, default="mercadolivre")
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("status IN ('active', 'inactive')", name="status"),)

    returns = relationship("ReturnRecord", back_populates="account")


# ─── 2. Returns / claims ───────────────────────────────────────────────────


class ReturnRecord(Base):
    __tablename__ = "devolucoes_avancadas"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    integration_account_id = Column(GUID(), ForeignKey("integration_accounts.account_id"), nullable=False)
    order_id = Column(String(64), nullable=False)
    claim_id = Column(String(64))
    account_name = Column(String(255))

    # Product
    product_title = Column(Text)
    sku = Column(String(100))
    quantity = Column(Integer)

    # Classification
    status = Column(String(30))
    priority = Column(String(20))
    claim_type = Column(String(50))
    moderation_status = Column(String(50))
    reputation_impact = Column(String(20))

    # Flags
    escalated_to_marketplace = Column(Boolean, default=False)
    in_mediation = Column(Boolean, default=False)
    seller_action_required = Column(Boolean, default=False)

    # Counters (NULL means "not enriched yet", distinct from 0)
    unread_messages = Column(Integer)
    attachments_count = Column(Integer)
    interaction_count = Column(Integer)

    # Money, signed as produced upstream
    retained_value = Column(Float)
    shipping_cost = Column(Float)
    compensation_value = Column(Float)

    # Durations in minutes
    avg_response_time = Column(Integer)
    total_resolution_time = Column(Integer)
    satisfaction_rate = Column(Float)

    # Timestamps (naive UTC)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    action_due_at = Column(DateTime)
    last_message_at = Column(DateTime)

    # Logistics
    tracking_code = Column(String(100))
    carrier = Column(String(100))

    # Communication
    buyer_nickname = Column(String(255))
    last_message_sender = Column(String(50))
    message_timeline = Column(JSON(none_as_null=True))
    auto_tags = Column(JSON, default=list)

    # Raw upstream payloads (schema varies by source and API version)
    claim_data = Column(JSON, default=dict)
    order_data = Column(JSON, default=dict)
    return_data = Column(JSON, default=dict)
    messages_data = Column(JSON, default=dict)

    __table_args__ = (
        Index("ix_devolucoes_account_created", "integration_account_id", "created_at"),
        Index("ix_devolucoes_account_priority", "integration_account_id", "priority"),
        Index("ix_devolucoes_action_due", "action_due_at"),
        CheckConstraint(
            "status IS NULL OR status IN ('opened', 'in_process', 'waiting_seller', 'closed', 'cancelled')",
            name="status",
        ),
        CheckConstraint("priority IS NULL OR priority IN ('critical', 'high', 'medium', 'low')", name="priority"),
        CheckConstraint("satisfaction_rate IS NULL OR (satisfaction_rate >= 0 AND satisfaction_rate <= 1)", name="satisfaction"),
    )

    account = relationship("IntegrationAccount", back_populates="returns")
