"""Voucher provisioning against the FreeRADIUS SQL schema.

Every voucher is a RADIUS user whose username and password are both the
voucher code. Attributes are upserted per (username, attribute) so that
repeated activations overwrite rather than duplicate rows.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import Session

from app.models.radius import RadAcct, RadCheck, RadReply, RadUserGroup
from app.services import radius_expiration
from app.services.common import utcnow
from app.services.exceptions import InvalidInput

logger = logging.getLogger(__name__)

IDLE_TIMEOUT_SECONDS = 300
_LEGACY_RATE_RE = re.compile(r"^(\d+)k/(\d+)k$")


class RadiusVoucherStatus(enum.Enum):
    disabled = "DISABLED"
    expired = "EXPIRED"
    active = "ACTIVE"
    unknown = "UNKNOWN"


@dataclass
class ActivationResult:
    username: str
    expires_at: datetime
    expiration_value: str
    session_seconds: int
    speed_down_kbps: int | None = None
    speed_up_kbps: int | None = None
    data_mb: int | None = None
    data_limit_bytes: int | None = None
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass
class UsageStats:
    username: str
    total_sessions: int = 0
    total_download_bytes: int = 0
    total_upload_bytes: int = 0
    total_session_seconds: int = 0
    first_session_start: datetime | None = None
    last_session_start: datetime | None = None
    last_session_stop: datetime | None = None

    @property
    def total_download_mb(self) -> float:
        return round(self.total_download_bytes / 1024 / 1024, 2)

    @property
    def total_upload_mb(self) -> float:
        return round(self.total_upload_bytes / 1024 / 1024, 2)

    @property
    def total_session_minutes(self) -> int:
        return round(self.total_session_seconds / 60)


def parse_legacy_rate(rate: str | None) -> tuple[int, int] | None:
    """Parse a legacy ``"3000k/1500k"`` rate string into (down, up) kbps."""
    if not rate:
        return None
    match = _LEGACY_RATE_RE.match(rate.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def _require_username(username: str | None, operation: str) -> str:
    if not username or not str(username).strip():
        raise InvalidInput(f"{operation} requires username")
    return str(username).strip()


def _upsert_attribute(db: Session, model, username: str, attribute: str, value: Any, op: str = ":=") -> None:
    table = model.__table__
    values = {"username": username, "attribute": attribute, "op": op, "value": str(value)}
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["username", "attribute"],
            set_={"op": stmt.excluded.op, "value": stmt.excluded.value},
        )
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["username", "attribute"],
            set_={"op": stmt.excluded.op, "value": stmt.excluded.value},
        )
    elif dialect in ("mysql", "mariadb"):
        stmt = mysql.insert(table).values(**values)
        stmt = stmt.on_duplicate_key_update(op=stmt.inserted.op, value=stmt.inserted.value)
    else:
        existing = db.scalars(
            select(model).where(model.username == username, model.attribute == attribute)
        ).first()
        if existing:
            existing.op = op
            existing.value = str(value)
        else:
            db.add(model(**values))
        return
    db.execute(stmt)


def _attributes(db: Session, model, username: str) -> dict[str, str]:
    rows = db.scalars(select(model).where(model.username == username)).all()
    return {row.attribute: row.value for row in rows}


class RadiusVouchers:
    @staticmethod
    def activate(
        db: Session,
        username: str,
        password: str,
        minutes: int,
        speed_down_kbps: int | None = None,
        speed_up_kbps: int | None = None,
        data_mb: int | None = None,
        rate: str | None = None,
        now: datetime | None = None,
    ) -> ActivationResult:
        if not username or not password:
            raise InvalidInput("activate requires username and password")
        try:
            minutes = int(minutes)
        except (TypeError, ValueError) as exc:
            raise InvalidInput("activate requires a numeric duration") from exc
        if minutes <= 0:
            raise InvalidInput("activate requires a positive duration")

        session_seconds = minutes * 60
        expires_at = (now or utcnow()) + timedelta(seconds=session_seconds)
        expiration_value = radius_expiration.encode(expires_at)

        down, up = speed_down_kbps, speed_up_kbps
        if not down and not up:
            legacy = parse_legacy_rate(rate)
            if legacy:
                down, up = legacy

        reply: dict[str, str] = {
            "Expiration": expiration_value,
            "Session-Timeout": str(session_seconds),
            "Idle-Timeout": str(IDLE_TIMEOUT_SECONDS),
        }
        if down and up:
            reply["Mikrotik-Rate-Limit"] = f"{down}k/{up}k"
            reply["WISPr-Bandwidth-Max-Down"] = str(down * 1000)
            reply["WISPr-Bandwidth-Max-Up"] = str(up * 1000)
        data_limit_bytes = None
        if data_mb and int(data_mb) > 0:
            data_limit_bytes = int(data_mb) * 1024 * 1024
            reply["Mikrotik-Total-Limit"] = str(data_limit_bytes)

        try:
            _upsert_attribute(db, RadCheck, username, "Cleartext-Password", password)
            for attribute, value in reply.items():
                _upsert_attribute(db, RadReply, username, attribute, value)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info("RADIUS voucher %s activated until %s", username, expiration_value)
        return ActivationResult(
            username=username,
            expires_at=expires_at,
            expiration_value=expiration_value,
            session_seconds=session_seconds,
            speed_down_kbps=down or None,
            speed_up_kbps=up or None,
            data_mb=int(data_mb) if data_mb else None,
            data_limit_bytes=data_limit_bytes,
            attributes=reply,
        )

    @staticmethod
    def deactivate(db: Session, username: str) -> dict:
        username = _require_username(username, "deactivate")
        past = utcnow() - timedelta(days=1)
        _upsert_attribute(db, RadCheck, username, "Auth-Type", "Reject")
        _upsert_attribute(db, RadReply, username, "Expiration", radius_expiration.encode(past))
        db.commit()
        logger.info("RADIUS voucher %s deactivated", username)
        return {"username": username, "deactivated": True}

    @staticmethod
    def reactivate(
        db: Session,
        username: str,
        password: str | None = None,
        minutes: int | None = None,
        speed_down_kbps: int | None = None,
        speed_up_kbps: int | None = None,
        data_mb: int | None = None,
    ) -> ActivationResult | dict:
        username = _require_username(username, "reactivate")
        db.execute(
            delete(RadCheck).where(
                RadCheck.username == username, RadCheck.attribute == "Auth-Type"
            )
        )
        if password and minutes:
            # activate() commits the removal together with the refreshed attributes
            return RadiusVouchers.activate(
                db,
                username,
                password,
                minutes,
                speed_down_kbps=speed_down_kbps,
                speed_up_kbps=speed_up_kbps,
                data_mb=data_mb,
            )
        db.commit()
        return {"username": username, "reactivated": True}

    @staticmethod
    def delete(db: Session, username: str) -> dict:
        username = _require_username(username, "delete")
        for model in (RadCheck, RadReply, RadUserGroup):
            db.execute(delete(model).where(model.username == username))
        db.commit()
        logger.info("RADIUS voucher %s deleted", username)
        return {"username": username, "deleted": True}

    @staticmethod
    def get_status(db: Session, username: str) -> dict:
        username = _require_username(username, "get_status")
        check = _attributes(db, RadCheck, username)
        reply = _attributes(db, RadReply, username)
        last_session = db.scalars(
            select(RadAcct)
            .where(RadAcct.username == username)
            .order_by(RadAcct.acctstarttime.desc())
            .limit(1)
        ).first()

        expires_at = radius_expiration.decode(reply.get("Expiration"))
        if check.get("Auth-Type") == "Reject":
            status = RadiusVoucherStatus.disabled
        elif expires_at is not None and expires_at < datetime.now(timezone.utc):
            status = RadiusVoucherStatus.expired
        elif check.get("Cleartext-Password"):
            status = RadiusVoucherStatus.active
        else:
            status = RadiusVoucherStatus.unknown

        return {
            "username": username,
            "status": status,
            "has_password": "Cleartext-Password" in check,
            "expiration": reply.get("Expiration"),
            "expires_at": expires_at,
            "session_timeout": int(reply["Session-Timeout"]) if reply.get("Session-Timeout") else None,
            "rate_limit": reply.get("Mikrotik-Rate-Limit"),
            "data_limit": int(reply["Mikrotik-Total-Limit"]) if reply.get("Mikrotik-Total-Limit") else None,
            "last_session": (
                {
                    "start_time": last_session.acctstarttime,
                    "stop_time": last_session.acctstoptime,
                    "input_bytes": last_session.acctinputoctets,
                    "output_bytes": last_session.acctoutputoctets,
                    "session_time": last_session.acctsessiontime,
                }
                if last_session
                else None
            ),
        }

    @staticmethod
    def get_usage(db: Session, username: str) -> UsageStats:
        username = _require_username(username, "get_usage")
        row = db.execute(
            select(
                func.count(RadAcct.radacctid),
                func.coalesce(func.sum(RadAcct.acctoutputoctets), 0),
                func.coalesce(func.sum(RadAcct.acctinputoctets), 0),
                func.coalesce(func.sum(RadAcct.acctsessiontime), 0),
                func.min(RadAcct.acctstarttime),
                func.max(RadAcct.acctstarttime),
                func.max(RadAcct.acctstoptime),
            ).where(RadAcct.username == username)
        ).one()
        # NAS-side octet counters: output is what the NAS sent to the client.
        return UsageStats(
            username=username,
            total_sessions=int(row[0] or 0),
            total_download_bytes=int(row[1] or 0),
            total_upload_bytes=int(row[2] or 0),
            total_session_seconds=int(row[3] or 0),
            first_session_start=row[4],
            last_session_start=row[5],
            last_session_stop=row[6],
        )

    @staticmethod
    def has_active_session(db: Session, username: str) -> bool:
        return (
            db.scalar(
                select(func.count(RadAcct.radacctid)).where(
                    RadAcct.username == username, RadAcct.acctstoptime.is_(None)
                )
            )
            or 0
        ) > 0

    @staticmethod
    def has_completed_session(db: Session, username: str) -> bool:
        return (
            db.scalar(
                select(func.count(RadAcct.radacctid)).where(
                    RadAcct.username == username, RadAcct.acctstoptime.is_not(None)
                )
            )
            or 0
        ) > 0

    @staticmethod
    def disconnect_session(db: Session, username: str) -> dict:
        """Push the expiration into the past.

        There is no CoA/Disconnect-Request support; the session ends when the
        NAS next re-authenticates the user and gets rejected.
        """
        username = _require_username(username, "disconnect_session")
        past = utcnow() - timedelta(seconds=1)
        _upsert_attribute(db, RadReply, username, "Expiration", radius_expiration.encode(past))
        db.commit()
        return {
            "username": username,
            "signal_sent": True,
            "note": "Expiration set to past. User will be disconnected on next reauthentication.",
        }


radius_vouchers = RadiusVouchers()
