import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class VoucherStatus(enum.Enum):
    unused = "unused"
    used = "used"
    disabled = "disabled"
    expired = "expired"


class VoucherSourceKind(enum.Enum):
    vouchers = "vouchers"
    orders = "orders"


class SecurityEventType(enum.Enum):
    validation_attempt = "validation_attempt"
    validation_success = "validation_success"
    validation_failed = "validation_failed"
    voucher_used = "voucher_used"
    suspicious_activity = "suspicious_activity"
    rate_limit_exceeded = "rate_limit_exceeded"
    ip_locked = "ip_locked"
    multiple_use_attempt = "multiple_use_attempt"


class SecuritySeverity(enum.Enum):
    info = "info"
    warning = "warning"
    critical = "critical"


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False
    )
    status: Mapped[VoucherStatus] = mapped_column(
        Enum(VoucherStatus), default=VoucherStatus.unused
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    plan = relationship("Plan")


class VoucherUsage(Base):
    __tablename__ = "voucher_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    voucher_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    source: Mapped[VoucherSourceKind] = mapped_column(Enum(VoucherSourceKind), nullable=False)
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    client_ip: Mapped[str | None] = mapped_column(String(45))
    mac_address: Mapped[str | None] = mapped_column(String(17))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )


class VoucherSecurityLog(Base):
    __tablename__ = "voucher_security_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[SecurityEventType] = mapped_column(
        Enum(SecurityEventType), nullable=False, index=True
    )
    severity: Mapped[SecuritySeverity] = mapped_column(
        Enum(SecuritySeverity), default=SecuritySeverity.info, index=True
    )
    voucher_code: Mapped[str | None] = mapped_column(String(20), index=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), index=True)
    user_agent: Mapped[str | None] = mapped_column(Text)
    mac_address: Mapped[str | None] = mapped_column(String(17))
    details: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )


class FlaggedIp(Base):
    __tablename__ = "flagged_ips"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(45), unique=True, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))
    failed_attempts: Mapped[int] = mapped_column(Integer, default=0)
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_permanent: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
