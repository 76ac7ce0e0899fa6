import enum
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class MacBindingStatus(enum.Enum):
    pending = "pending"
    active = "active"
    expired = "expired"
    removed = "removed"


class MacBinding(Base):
    __tablename__ = "mac_bindings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id"), index=True)
    mac_address: Mapped[str] = mapped_column(String(17), nullable=False, index=True)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    binding_id: Mapped[str | None] = mapped_column(String(40))
    comment: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[MacBindingStatus] = mapped_column(
        Enum(MacBindingStatus), default=MacBindingStatus.pending, index=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    order = relationship("Order")
