"""hotspot billing schema

Revision ID: 0001_hotspot_billing
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from app.config import settings


# revision identifiers, used by Alembic.
revision: str = "0001_hotspot_billing"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

order_status = sa.Enum("pending", "paid", "failed", "completed", name="orderstatus")
autologin_status = sa.Enum("success", "skipped", "failed", name="autologinstatus")
payment_log_status = sa.Enum(
    "initiated", "pending", "processing", "success", "failed", "cancelled",
    name="paymentlogstatus",
)
voucher_status = sa.Enum("unused", "used", "disabled", "expired", name="voucherstatus")
voucher_source_kind = sa.Enum("vouchers", "orders", name="vouchersourcekind")
security_event_type = sa.Enum(
    "validation_attempt",
    "validation_success",
    "validation_failed",
    "voucher_used",
    "suspicious_activity",
    "rate_limit_exceeded",
    "ip_locked",
    "multiple_use_attempt",
    name="securityeventtype",
)
security_severity = sa.Enum("info", "warning", "critical", name="securityseverity")
mac_binding_status = sa.Enum("pending", "active", "expired", "removed", name="macbindingstatus")
provider_environment = sa.Enum("test", "live", name="providerenvironment")


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if with_updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return columns


def upgrade() -> None:
    bind = op.get_bind()
    existing_tables = set(sa.inspect(bind).get_table_names())

    if "plans" not in existing_tables:
        op.create_table(
            "plans",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(120), nullable=False),
            sa.Column("duration_minutes", sa.Integer, nullable=False),
            sa.Column("speed_down_kbps", sa.Integer),
            sa.Column("speed_up_kbps", sa.Integer),
            sa.Column("data_limit_mb", sa.Integer),
            sa.Column("rate_limit", sa.String(40)),
            sa.Column("price", sa.Numeric(12, 2), nullable=False),
            sa.Column("currency", sa.String(3), server_default="UGX"),
            sa.Column("is_active", sa.Boolean, server_default=sa.true()),
            *_timestamps(with_updated=False),
        )

    if "orders" not in existing_tables:
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("reference", sa.String(40), nullable=False, unique=True),
            sa.Column(
                "plan_id",
                sa.Integer,
                sa.ForeignKey("plans.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("voucher_code", sa.String(20), nullable=False, unique=True),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("currency", sa.String(3), server_default="UGX"),
            sa.Column("provider", sa.String(40), nullable=False),
            sa.Column("provider_tx_id", sa.String(120)),
            sa.Column("provider_ref", sa.String(120)),
            sa.Column("status", order_status, server_default="pending"),
            sa.Column("customer_msisdn", sa.String(20)),
            sa.Column("customer_email", sa.String(255)),
            sa.Column("customer_mac", sa.String(17)),
            sa.Column("customer_ip", sa.String(45)),
            sa.Column("login_url", sa.String(500)),
            sa.Column("autologin_status", autologin_status),
            sa.Column("autologin_message", sa.Text),
            sa.Column("paid_at", sa.DateTime(timezone=True)),
            sa.Column("access_expires_at", sa.DateTime(timezone=True)),
            sa.Column("radius_provisioned_at", sa.DateTime(timezone=True)),
            *_timestamps(),
        )
        op.create_index("ix_orders_status", "orders", ["status"])
        op.create_index("ix_orders_provider_ref", "orders", ["provider_ref"])

    if "payment_logs" not in existing_tables:
        op.create_table(
            "payment_logs",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id")),
            sa.Column("provider", sa.String(40), nullable=False),
            sa.Column("status", payment_log_status, nullable=False),
            sa.Column("amount", sa.Numeric(12, 2)),
            sa.Column("currency", sa.String(3)),
            sa.Column("provider_tx_id", sa.String(120)),
            sa.Column("message", sa.Text),
            *_timestamps(with_updated=False),
        )
        op.create_index("ix_payment_logs_order_id", "payment_logs", ["order_id"])

    if "vouchers" not in existing_tables:
        op.create_table(
            "vouchers",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("code", sa.String(20), nullable=False, unique=True),
            sa.Column(
                "plan_id",
                sa.Integer,
                sa.ForeignKey("plans.id", ondelete="RESTRICT"),
                nullable=False,
            ),
            sa.Column("status", voucher_status, server_default="unused"),
            sa.Column("expires_at", sa.DateTime(timezone=True)),
            sa.Column("used_at", sa.DateTime(timezone=True)),
            *_timestamps(with_updated=False),
        )

    if "voucher_usage" not in existing_tables:
        op.create_table(
            "voucher_usage",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("voucher_code", sa.String(20), nullable=False, unique=True),
            sa.Column("source", voucher_source_kind, nullable=False),
            sa.Column("source_id", sa.Integer, nullable=False),
            sa.Column("client_ip", sa.String(45)),
            sa.Column("mac_address", sa.String(17)),
            sa.Column("metadata", sa.JSON),
            sa.Column("used_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    if "voucher_security_logs" not in existing_tables:
        op.create_table(
            "voucher_security_logs",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("event_type", security_event_type, nullable=False),
            sa.Column("severity", security_severity, server_default="info"),
            sa.Column("voucher_code", sa.String(20)),
            sa.Column("ip_address", sa.String(45)),
            sa.Column("user_agent", sa.Text),
            sa.Column("mac_address", sa.String(17)),
            sa.Column("details", sa.JSON),
            *_timestamps(with_updated=False),
        )
        for column in ("event_type", "severity", "voucher_code", "ip_address", "created_at"):
            op.create_index(
                f"ix_voucher_security_logs_{column}", "voucher_security_logs", [column]
            )

    if "flagged_ips" not in existing_tables:
        op.create_table(
            "flagged_ips",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("ip_address", sa.String(45), nullable=False, unique=True),
            sa.Column("reason", sa.String(255)),
            sa.Column("failed_attempts", sa.Integer, server_default="0"),
            sa.Column("blocked_until", sa.DateTime(timezone=True)),
            sa.Column("is_permanent", sa.Boolean, server_default=sa.false()),
            *_timestamps(),
        )

    if "mac_bindings" not in existing_tables:
        op.create_table(
            "mac_bindings",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("order_id", sa.Integer, sa.ForeignKey("orders.id")),
            sa.Column("mac_address", sa.String(17), nullable=False),
            sa.Column("ip_address", sa.String(45)),
            sa.Column("binding_id", sa.String(40)),
            sa.Column("comment", sa.String(255)),
            sa.Column("status", mac_binding_status, server_default="pending"),
            sa.Column("expires_at", sa.DateTime(timezone=True)),
            sa.Column("error_message", sa.Text),
            *_timestamps(),
        )
        for column in ("order_id", "mac_address", "status"):
            op.create_index(f"ix_mac_bindings_{column}", "mac_bindings", [column])

    if "payment_providers" not in existing_tables:
        op.create_table(
            "payment_providers",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("provider_code", sa.String(40), nullable=False, unique=True),
            sa.Column("display_name", sa.String(120), nullable=False),
            sa.Column("is_enabled", sa.Boolean, server_default=sa.false()),
            sa.Column("environment", provider_environment, server_default="test"),
            sa.Column("credentials", sa.JSON),
            *_timestamps(),
        )

    # A split-out FreeRADIUS database owns its schema.
    if settings.radius_database_url:
        return

    for table in ("radcheck", "radreply"):
        if table not in existing_tables:
            op.create_table(
                table,
                sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
                sa.Column("username", sa.String(64), nullable=False),
                sa.Column("attribute", sa.String(64), nullable=False),
                sa.Column("op", sa.String(2), server_default=":="),
                sa.Column("value", sa.String(253), nullable=False),
                sa.UniqueConstraint(
                    "username", "attribute", name=f"uq_{table}_username_attribute"
                ),
            )
            op.create_index(f"ix_{table}_username", table, ["username"])

    if "radusergroup" not in existing_tables:
        op.create_table(
            "radusergroup",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("username", sa.String(64), nullable=False),
            sa.Column("groupname", sa.String(64), nullable=False),
            sa.Column("priority", sa.Integer, server_default="1"),
        )
        op.create_index("ix_radusergroup_username", "radusergroup", ["username"])

    if "radacct" not in existing_tables:
        op.create_table(
            "radacct",
            sa.Column("radacctid", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("acctsessionid", sa.String(64), nullable=False),
            sa.Column("username", sa.String(64), nullable=False),
            sa.Column("nasipaddress", sa.String(45)),
            sa.Column("framedipaddress", sa.String(45)),
            sa.Column("callingstationid", sa.String(50)),
            sa.Column("acctstarttime", sa.DateTime),
            sa.Column("acctstoptime", sa.DateTime),
            sa.Column("acctsessiontime", sa.BigInteger),
            sa.Column("acctinputoctets", sa.BigInteger),
            sa.Column("acctoutputoctets", sa.BigInteger),
            sa.Column("acctterminatecause", sa.String(32)),
        )
        op.create_index("ix_radacct_username", "radacct", ["username"])


def downgrade() -> None:
    if not settings.radius_database_url:
        for table in ("radacct", "radusergroup", "radreply", "radcheck"):
            op.drop_table(table)
    for table in (
        "payment_providers",
        "mac_bindings",
        "flagged_ips",
        "voucher_security_logs",
        "voucher_usage",
        "vouchers",
        "payment_logs",
        "orders",
        "plans",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum_type in (
        provider_environment,
        mac_binding_status,
        security_severity,
        security_event_type,
        voucher_source_kind,
        voucher_status,
        payment_log_status,
        autologin_status,
        order_status,
    ):
        enum_type.drop(bind, checkfirst=True)
