"""Database models for accounts, keys, credits and usage."""
import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Credits and costs are USD amounts with micro-dollar precision
Money = Numeric(18, 6)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Account(Base):
    """Account owning keys, a balance and usage. Created by the signup flow."""

    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(320), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    api_keys = relationship("ApiKey", back_populates="account")
    balance = relationship("Balance", back_populates="account", uselist=False)


class ApiKey(Base):
    """API key. Only the SHA-256 digest of the secret is stored."""

    __tablename__ = "api_keys"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    key_hash = Column(String(64), unique=True, nullable=False, index=True)
    key_prefix = Column(String(16), nullable=False)  # display only
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    account = relationship("Account", back_populates="api_keys")


class Balance(Base):
    """Credit balance. Mutated only through atomic UPDATE/UPSERT statements."""

    __tablename__ = "balances"

    account_id = Column(Uuid, ForeignKey("accounts.id"), primary_key=True)
    credits = Column(Money, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # Relationships
    account = relationship("Account", back_populates="balance")

    __table_args__ = (CheckConstraint("credits >= 0", name="ck_balances_credits_non_negative"),)


class RateLimitPolicy(Base):
    """Per-account request caps. A NULL cap leaves that window unlimited."""

    __tablename__ = "rate_limits"

    account_id = Column(Uuid, ForeignKey("accounts.id"), primary_key=True)
    requests_per_minute = Column(Integer, nullable=True, default=60)
    requests_per_hour = Column(Integer, nullable=True, default=1000)
    requests_per_day = Column(Integer, nullable=True, default=10000)
    max_tokens_per_request = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class RequestCounter(Base):
    """Request count for one account in one fixed window."""

    __tablename__ = "request_counters"

    account_id = Column(Uuid, ForeignKey("accounts.id"), primary_key=True)
    window_type = Column(String(10), primary_key=True)  # minute, hour, day
    window_start = Column(DateTime, primary_key=True)
    request_count = Column(Integer, nullable=False, default=0)


class PricingRule(Base):
    """Markup rule selected by glob pattern against the model id."""

    __tablename__ = "pricing_rules"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    model_pattern = Column(String(255), nullable=False)
    markup_percentage = Column(Numeric(8, 2), nullable=False)
    min_cost_usd = Column(Money, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_pricing_rules_active_priority", "is_active", "priority"),)


class UsageRecord(Base):
    """Append-only audit entry for one admitted request."""

    __tablename__ = "usage_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id = Column(String(64), nullable=False, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id"), nullable=False, index=True)
    api_key_id = Column(Uuid, ForeignKey("api_keys.id"), nullable=True)
    model = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False)  # success, error
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    cost_usd = Column(Money, nullable=False, default=0)
    credits_deducted = Column(Money, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    request_metadata = Column(JSON, nullable=True)
    response_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_usage_logs_account_created", "account_id", "created_at"),
    )
