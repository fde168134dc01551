"""initial schema

Revision ID: 9f3a1c2b7d40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

revision = "9f3a1c2b7d40"
down_revision = None
branch_labels = None
depends_on = None

user_status = sa.Enum("new", "active", "disabled", name="userstatus")
vm_status = sa.Enum("provisioning", "active", "error", name="vmstatus")
suspend_state = sa.Enum("no", "auto", "manual", name="suspendstate")
image_status = sa.Enum("pending", "active", "error", name="imagestatus")


def _id() -> sa.Column:
    return sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("users"):
        op.create_table(
            "users",
            _id(),
            sa.Column("username", sa.String(length=128), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("password_hash", sa.String(length=512), nullable=False),
            sa.Column("credit", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("vm_limit", sa.Integer(), nullable=False, server_default="10"),
            sa.Column("create_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_billing_notify", sa.DateTime(timezone=True), nullable=True),
            sa.Column("billing_low_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("time_billed", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", user_status, nullable=False, server_default="new"),
            sa.Column("admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.UniqueConstraint("username", name="uq_users_username"),
            sa.UniqueConstraint("email", name="uq_users_email"),
        )

    if not inspector.has_table("plans"):
        op.create_table(
            "plans",
            _id(),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("price", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("ram", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("cpu", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("storage", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("bandwidth", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("global", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    if not inspector.has_table("region_plans"):
        op.create_table(
            "region_plans",
            _id(),
            sa.Column("plan_id", sa.Integer(), nullable=False),
            sa.Column("region", sa.String(length=64), nullable=False),
            sa.Column("identification", sa.String(length=255), nullable=False, server_default=""),
            sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
            sa.UniqueConstraint("plan_id", "region", name="uq_region_plans_plan_region"),
        )
        op.create_index("ix_region_plans_plan_id", "region_plans", ["plan_id"])

    if not inspector.has_table("regions"):
        op.create_table(
            "regions",
            sa.Column("name", sa.String(length=64), primary_key=True, nullable=False),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    if not inspector.has_table("vms"):
        op.create_table(
            "vms",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("region", sa.String(length=64), nullable=False),
            sa.Column("plan_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=64), nullable=False),
            sa.Column("identification", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("status", vm_status, nullable=False, server_default="provisioning"),
            sa.Column("task_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("external_ip", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("private_ip", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("created_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("time_billed", sa.DateTime(timezone=True), nullable=True),
            sa.Column("suspended", suspend_state, nullable=False, server_default="no"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        )
        op.create_index("ix_vms_user_id", "vms", ["user_id"])
        op.create_index("ix_vms_region", "vms", ["region"])

    if not inspector.has_table("vm_metadata"):
        op.create_table(
            "vm_metadata",
            _id(),
            sa.Column("vm_id", sa.Integer(), nullable=False),
            sa.Column("k", sa.String(length=128), nullable=False),
            sa.Column("v", sa.Text(), nullable=False, server_default=""),
            sa.ForeignKeyConstraint(["vm_id"], ["vms.id"]),
            sa.UniqueConstraint("vm_id", "k", name="uq_vm_metadata_vm_key"),
        )
        op.create_index("ix_vm_metadata_vm_id", "vm_metadata", ["vm_id"])

    if not inspector.has_table("images"):
        op.create_table(
            "images",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("region", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("identification", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("status", image_status, nullable=False, server_default="pending"),
            sa.Column("source_vm_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        )
        op.create_index("ix_images_user_id", "images", ["user_id"])
        op.create_index("ix_images_region", "images", ["region"])

    if not inspector.has_table("charges"):
        op.create_table(
            "charges",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("detail", sa.Text(), nullable=False, server_default=""),
            sa.Column("k", sa.String(length=128), nullable=True),
            sa.Column("time", sa.Date(), nullable=False),
            sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.UniqueConstraint("user_id", "k", "time", name="uq_charges_user_key_day"),
        )
        op.create_index("ix_charges_user_id", "charges", ["user_id"])

    if not inspector.has_table("transactions"):
        op.create_table(
            "transactions",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("gateway", sa.String(length=64), nullable=False),
            sa.Column("gateway_identifier", sa.String(length=255), nullable=False),
            sa.Column("notes", sa.Text(), nullable=False, server_default=""),
            sa.Column("amount", sa.BigInteger(), nullable=False),
            sa.Column("fee", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("time", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.UniqueConstraint("gateway", "gateway_identifier", name="uq_transactions_gateway_id"),
        )
        op.create_index("ix_transactions_user_id", "transactions", ["user_id"])

    if not inspector.has_table("region_bandwidth"):
        op.create_table(
            "region_bandwidth",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("region", sa.String(length=64), nullable=False),
            sa.Column("bandwidth_used", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("bandwidth_additional", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("bandwidth_billed", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("bandwidth_notified_percent", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.UniqueConstraint("user_id", "region", name="uq_region_bandwidth_user_region"),
        )
        op.create_index("ix_region_bandwidth_user_id", "region_bandwidth", ["user_id"])

    if not inspector.has_table("api_keys"):
        op.create_table(
            "api_keys",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("label", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("api_id", sa.String(length=16), nullable=False),
            sa.Column("api_key", sa.String(length=128), nullable=False),
            sa.Column("nonce", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("restrict_action", sa.Text(), nullable=True),
            sa.Column("restrict_ip", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.UniqueConstraint("api_id", name="uq_api_keys_api_id"),
        )
        op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])

    if not inspector.has_table("sessions"):
        op.create_table(
            "sessions",
            _id(),
            sa.Column("uid", sa.String(length=64), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("admin", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("original_id", sa.Integer(), nullable=True),
            sa.Column("regenerate", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("active_time", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("uid", name="uq_sessions_uid"),
        )

    if not inspector.has_table("form_tokens"):
        op.create_table(
            "form_tokens",
            _id(),
            sa.Column("session_uid", sa.String(length=64), nullable=False),
            sa.Column("token", sa.String(length=64), nullable=False),
            sa.Column("time", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_form_tokens_session_uid", "form_tokens", ["session_uid"])

    if not inspector.has_table("pwreset_tokens"):
        op.create_table(
            "pwreset_tokens",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("token", sa.String(length=64), nullable=False),
            sa.Column("time", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        )
        op.create_index("ix_pwreset_tokens_user_id", "pwreset_tokens", ["user_id"])

    if not inspector.has_table("antiflood"):
        op.create_table(
            "antiflood",
            _id(),
            sa.Column("ip", sa.String(length=64), nullable=False),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("time", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_antiflood_ip_action", "antiflood", ["ip", "action"])

    if not inspector.has_table("actions"):
        op.create_table(
            "actions",
            _id(),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("ip", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("details", sa.Text(), nullable=False, server_default=""),
            sa.Column("time", sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index("ix_actions_user_id", "actions", ["user_id"])


def downgrade() -> None:
    for table in (
        "actions",
        "antiflood",
        "pwreset_tokens",
        "form_tokens",
        "sessions",
        "api_keys",
        "region_bandwidth",
        "transactions",
        "charges",
        "images",
        "vm_metadata",
        "vms",
        "regions",
        "region_plans",
        "plans",
        "users",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum_type in (image_status, suspend_state, vm_status, user_status):
        enum_type.drop(bind, checkfirst=True)
