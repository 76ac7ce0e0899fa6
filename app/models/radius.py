from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db import RadiusBase


class RadCheck(RadiusBase):
    __tablename__ = "radcheck"
    __table_args__ = (
        UniqueConstraint("username", "attribute", name="uq_radcheck_username_attribute"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    attribute: Mapped[str] = mapped_column(String(64), nullable=False)
    op: Mapped[str] = mapped_column(String(2), default=":=")
    value: Mapped[str] = mapped_column(String(253), nullable=False)


class RadReply(RadiusBase):
    __tablename__ = "radreply"
    __table_args__ = (
        UniqueConstraint("username", "attribute", name="uq_radreply_username_attribute"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    attribute: Mapped[str] = mapped_column(String(64), nullable=False)
    op: Mapped[str] = mapped_column(String(2), default=":=")
    value: Mapped[str] = mapped_column(String(253), nullable=False)


class RadUserGroup(RadiusBase):
    __tablename__ = "radusergroup"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    groupname: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1)


class RadAcct(RadiusBase):
    __tablename__ = "radacct"

    radacctid: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    acctsessionid: Mapped[str] = mapped_column(String(64), nullable=False)
    username: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    nasipaddress: Mapped[str | None] = mapped_column(String(45))
    framedipaddress: Mapped[str | None] = mapped_column(String(45))
    callingstationid: Mapped[str | None] = mapped_column(String(50))
    acctstarttime: Mapped[datetime | None] = mapped_column(DateTime)
    acctstoptime: Mapped[datetime | None] = mapped_column(DateTime)
    acctsessiontime: Mapped[int | None] = mapped_column(BigInteger)
    acctinputoctets: Mapped[int | None] = mapped_column(BigInteger)
    acctoutputoctets: Mapped[int | None] = mapped_column(BigInteger)
    acctterminatecause: Mapped[str | None] = mapped_column(String(32))
