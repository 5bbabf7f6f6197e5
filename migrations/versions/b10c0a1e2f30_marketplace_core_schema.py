"""marketplace core schema: vendors, orders, deliveries, earnings, payouts, outbox

Revision ID: b10c0a1e2f30
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "b10c0a1e2f30"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _money(name: str, *, nullable: bool = False, default: str | None = "0.00") -> sa.Column:
    kwargs = {"nullable": nullable}
    if default is not None:
        kwargs["server_default"] = default
    return sa.Column(name, sa.Numeric(12, 2), **kwargs)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="buyer"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_phone", "users", ["phone"], unique=False)

    if not _table_exists(bind, "vendors"):
        op.create_table(
            "vendors",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("business_name", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("contact_name", sa.String(length=120), nullable=True),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("business_address", sa.String(length=255), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=True),
            sa.Column("longitude", sa.Float(), nullable=True),
            sa.Column("bank_name", sa.String(length=120), nullable=True),
            sa.Column("bank_code", sa.String(length=32), nullable=True),
            sa.Column("account_number", sa.String(length=64), nullable=True),
            sa.Column("account_name", sa.String(length=120), nullable=True),
            sa.Column("paystack_recipient_code", sa.String(length=64), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _money("total_earnings"),
            _money("available_balance"),
            _money("pending_balance"),
            _money("total_paid_out"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_vendors_user_id", "vendors", ["user_id"], unique=True)

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="paid"),
            sa.Column("order_type", sa.String(length=16), nullable=False, server_default="product"),
            _money("total_amount", default=None),
            _money("delivery_fee"),
            sa.Column("delivery_address", sa.String(length=255), nullable=True),
            sa.Column("service_location", sa.String(length=255), nullable=True),
            sa.Column("delivery_latitude", sa.Float(), nullable=True),
            sa.Column("delivery_longitude", sa.Float(), nullable=True),
            sa.Column("payment_status", sa.String(length=24), nullable=False, server_default="completed"),
            sa.Column("payment_method", sa.String(length=32), nullable=True),
            sa.Column("payment_reference", sa.String(length=128), nullable=False),
            sa.Column("courier_id", sa.String(length=64), nullable=True),
            sa.Column("courier_name", sa.String(length=120), nullable=True),
            sa.Column("tracking_number", sa.String(length=64), nullable=True),
            sa.Column("internal_tracking_id", sa.String(length=64), nullable=True, unique=True),
            sa.Column("confirmation_token", sa.String(length=96), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("vendor_notes", sa.Text(), nullable=True),
            sa.Column("dispute_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("vendor_accepted_at", sa.DateTime(), nullable=True),
            sa.Column("delivery_pickup_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("customer_confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"], unique=False)
        op.create_index("ix_orders_vendor_id", "orders", ["vendor_id"], unique=False)
        op.create_index("ix_orders_status", "orders", ["status"], unique=False)
        op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"], unique=True)
        op.create_index("ix_orders_confirmation_token", "orders", ["confirmation_token"], unique=True)

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("product_id", sa.Integer(), nullable=True),
            sa.Column("service_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(length=200), nullable=False, server_default=""),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            _money("price", default=None),
            sa.Column("appointment_date", sa.String(length=32), nullable=True),
            sa.Column("appointment_time", sa.String(length=16), nullable=True),
            sa.Column("duration", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("service_location", sa.String(length=255), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
        )
        op.create_index("ix_order_items_order_id", "order_items", ["order_id"], unique=False)

    if not _table_exists(bind, "delivery_providers"):
        op.create_table(
            "delivery_providers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("slug", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("provider_type", sa.String(length=32), nullable=False, server_default="manual"),
            sa.Column("notification_method", sa.String(length=16), nullable=False, server_default="sms"),
            sa.Column("contact_email", sa.String(length=255), nullable=True),
            sa.Column("contact_phone", sa.String(length=32), nullable=True),
            _money("base_rate"),
            _money("distance_rate"),
            sa.Column("estimated_delivery_time", sa.String(length=64), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_delivery_providers_slug", "delivery_providers", ["slug"], unique=True)

    if not _table_exists(bind, "deliveries"):
        op.create_table(
            "deliveries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("provider_id", sa.Integer(), sa.ForeignKey("delivery_providers.id"), nullable=False),
            sa.Column("external_tracking_id", sa.String(length=120), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("pickup_address", sa.String(length=255), nullable=True),
            sa.Column("delivery_address", sa.String(length=255), nullable=True),
            _money("delivery_fee"),
            sa.Column("distance_km", sa.Float(), nullable=True),
            sa.Column("weight_kg", sa.Float(), nullable=True),
            sa.Column("package_description", sa.String(length=255), nullable=True),
            sa.Column("estimated_pickup_time", sa.DateTime(), nullable=True),
            sa.Column("estimated_delivery_time", sa.DateTime(), nullable=True),
            sa.Column("actual_pickup_time", sa.DateTime(), nullable=True),
            sa.Column("actual_delivery_time", sa.DateTime(), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_deliveries_order_id", "deliveries", ["order_id"], unique=True)
        op.create_index("ix_deliveries_provider_id", "deliveries", ["provider_id"], unique=False)
        op.create_index("ix_deliveries_external_tracking_id", "deliveries", ["external_tracking_id"], unique=False)
        op.create_index("ix_deliveries_status", "deliveries", ["status"], unique=False)

    if not _table_exists(bind, "delivery_updates"):
        op.create_table(
            "delivery_updates",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("delivery_id", sa.Integer(), sa.ForeignKey("deliveries.id"), nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False),
            sa.Column("kind", sa.String(length=16), nullable=False, server_default="status"),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("location", sa.String(length=120), nullable=True),
            sa.Column("source", sa.String(length=16), nullable=False, server_default="manual"),
            sa.Column("external_event_id", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("delivery_id", "external_event_id", name="uq_delivery_updates_event"),
        )
        op.create_index("ix_delivery_updates_delivery_id", "delivery_updates", ["delivery_id"], unique=False)
        op.create_index("ix_delivery_updates_created_at", "delivery_updates", ["created_at"], unique=False)

    if not _table_exists(bind, "order_tracking"):
        op.create_table(
            "order_tracking",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("delivery_id", sa.Integer(), sa.ForeignKey("deliveries.id"), nullable=True),
            sa.Column("status", sa.String(length=64), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("location", sa.String(length=120), nullable=True),
            sa.Column("is_delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("source", sa.String(length=24), nullable=False, server_default="system"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_order_tracking_order_id", "order_tracking", ["order_id"], unique=False)
        op.create_index("ix_order_tracking_created_at", "order_tracking", ["created_at"], unique=False)

    if not _table_exists(bind, "appointments"):
        op.create_table(
            "appointments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
            sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("service_id", sa.Integer(), nullable=True),
            sa.Column("service_name", sa.String(length=200), nullable=True),
            sa.Column("appointment_date", sa.String(length=32), nullable=True),
            sa.Column("appointment_time", sa.String(length=16), nullable=True),
            sa.Column("address", sa.String(length=255), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending_acceptance"),
            sa.Column("vendor_notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_appointments_order_id", "appointments", ["order_id"], unique=True)
        op.create_index("ix_appointments_vendor_id", "appointments", ["vendor_id"], unique=False)
        op.create_index("ix_appointments_buyer_id", "appointments", ["buyer_id"], unique=False)
        op.create_index("ix_appointments_status", "appointments", ["status"], unique=False)

    if not _table_exists(bind, "payout_requests"):
        op.create_table(
            "payout_requests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
            _money("requested_amount", default=None),
            _money("available_balance_snapshot", default=None),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("request_reason", sa.Text(), nullable=True),
            sa.Column("reviewed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(), nullable=True),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("transfer_reference", sa.String(length=128), nullable=True, unique=True),
            sa.Column("transfer_code", sa.String(length=128), nullable=True),
            sa.Column("transfer_status", sa.String(length=24), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            _money("actual_paid_amount", nullable=True, default=None),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("failed_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_payout_requests_vendor_id", "payout_requests", ["vendor_id"], unique=False)
        op.create_index("ix_payout_requests_status", "payout_requests", ["status"], unique=False)
        op.create_index("ix_payout_requests_transfer_code", "payout_requests", ["transfer_code"], unique=False)
        op.create_index("ix_payout_requests_created_at", "payout_requests", ["created_at"], unique=False)

    if not _table_exists(bind, "vendor_earnings"):
        op.create_table(
            "vendor_earnings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("vendors.id"), nullable=False),
            sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
            sa.Column("order_item_id", sa.Integer(), sa.ForeignKey("order_items.id"), nullable=False, unique=True),
            _money("gross_amount", default=None),
            sa.Column("platform_fee_percentage", sa.Numeric(5, 2), nullable=False, server_default="20.00"),
            _money("platform_fee", default=None),
            _money("net_earnings", default=None),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("earning_date", sa.DateTime(), nullable=False),
            sa.Column("available_date", sa.DateTime(), nullable=True),
            sa.Column("paid_out_at", sa.DateTime(), nullable=True),
            sa.Column("payout_request_id", sa.Integer(), sa.ForeignKey("payout_requests.id"), nullable=True),
        )
        op.create_index("ix_vendor_earnings_vendor_id", "vendor_earnings", ["vendor_id"], unique=False)
        op.create_index("ix_vendor_earnings_order_id", "vendor_earnings", ["order_id"], unique=False)
        op.create_index("ix_vendor_earnings_status", "vendor_earnings", ["status"], unique=False)
        op.create_index("ix_vendor_earnings_payout_request_id", "vendor_earnings", ["payout_request_id"], unique=False)

    if not _table_exists(bind, "platform_settings"):
        op.create_table(
            "platform_settings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("setting_key", sa.String(length=100), nullable=False),
            sa.Column("setting_value", sa.Text(), nullable=False, server_default=""),
            sa.Column("setting_type", sa.String(length=16), nullable=False, server_default="string"),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("updated_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_platform_settings_setting_key", "platform_settings", ["setting_key"], unique=True)

    if not _table_exists(bind, "notifications"):
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("event_type", sa.String(length=64), nullable=False),
            sa.Column("channel", sa.String(length=16), nullable=False, server_default="sms"),
            sa.Column("recipient", sa.String(length=255), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=True),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="queued"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("provider", sa.String(length=64), nullable=True),
            sa.Column("provider_ref", sa.String(length=120), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("subject_type", sa.String(length=32), nullable=True),
            sa.Column("subject_id", sa.String(length=64), nullable=True),
            sa.Column("dedupe_key", sa.String(length=180), nullable=True, unique=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
            sa.Column("meta", sa.Text(), nullable=True),
        )
        op.create_index("ix_notifications_event_type", "notifications", ["event_type"], unique=False)
        op.create_index("ix_notifications_status", "notifications", ["status"], unique=False)
        op.create_index("ix_notifications_subject_type", "notifications", ["subject_type"], unique=False)
        op.create_index("ix_notifications_subject_id", "notifications", ["subject_id"], unique=False)
        op.create_index("ix_notifications_created_at", "notifications", ["created_at"], unique=False)

    if not _table_exists(bind, "webhook_events"):
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=64), nullable=False, server_default="paystack"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=True),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
        )
        op.create_index("ix_webhook_events_reference", "webhook_events", ["reference"], unique=False)

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("actor_role", sa.String(length=16), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=64), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_platform_events_created_at", "platform_events", ["created_at"], unique=False)
        op.create_index("ix_platform_events_event_type", "platform_events", ["event_type"], unique=False)
        op.create_index("ix_platform_events_actor_user_id", "platform_events", ["actor_user_id"], unique=False)
        op.create_index("ix_platform_events_subject_type", "platform_events", ["subject_type"], unique=False)
        op.create_index("ix_platform_events_subject_id", "platform_events", ["subject_id"], unique=False)

    if not _table_exists(bind, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("scope", sa.String(length=64), nullable=False, server_default="vendor_balances"),
            sa.Column("vendor_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_reconciliation_reports_created_at", "reconciliation_reports", ["created_at"], unique=False)


def downgrade():
    bind = op.get_bind()
    for table in (
        "reconciliation_reports",
        "platform_events",
        "webhook_events",
        "notifications",
        "platform_settings",
        "vendor_earnings",
        "payout_requests",
        "appointments",
        "order_tracking",
        "delivery_updates",
        "deliveries",
        "delivery_providers",
        "order_items",
        "orders",
        "vendors",
        "users",
    ):
        if _table_exists(bind, table):
            op.drop_table(table)
