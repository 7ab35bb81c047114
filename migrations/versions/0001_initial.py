"""Initial schema: drivers, driver locations, requests, assignments, offers, cancellations, requesters"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "drivers",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), unique=True, nullable=False),
        sa.Column("vehicle_class", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("rating", sa.Float, nullable=False, server_default="5.0"),
        sa.Column("completed_trips", sa.Integer, nullable=False, server_default="0"),
        sa.Column("verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "driver_locations",
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), primary_key=True),
        sa.Column("lat", sa.Float, nullable=False),
        sa.Column("lng", sa.Float, nullable=False),
        sa.Column("online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("available", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("vehicle_class", sa.String(20), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_driver_locations_search", "driver_locations", ["online", "available", "verified", "vehicle_class"]
    )
    op.create_index("idx_driver_locations_lat_lng", "driver_locations", ["lat", "lng"])

    op.create_table(
        "requesters",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("is_banned", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("ban_reason", sa.String(255), nullable=True),
        sa.Column("banned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "service_requests",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("requester_id", sa.String, nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dest_lat", sa.Float, nullable=False),
        sa.Column("dest_lng", sa.Float, nullable=False),
        sa.Column("pickup_zone_id", sa.String(64), nullable=True),
        sa.Column("dest_zone_id", sa.String(64), nullable=True),
        sa.Column("service_type", sa.String(20), nullable=False),
        sa.Column("vehicle_class", sa.String(20), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False, server_default="normal"),
        sa.Column("distance_km", sa.Float, nullable=False),
        sa.Column("estimated_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("surge_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("final_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(5), nullable=False, server_default="CDF"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("assigned_driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("bidding", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("budget_ceiling", sa.Numeric(12, 2), nullable=True),
        sa.Column("bidding_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_service_requests_requester_id", "service_requests", ["requester_id"])
    op.create_index("ix_service_requests_status", "service_requests", ["status"])
    op.create_index("ix_service_requests_assigned_driver_id", "service_requests", ["assigned_driver_id"])
    op.create_index("ix_service_requests_created_at", "service_requests", ["created_at"])
    op.create_index("idx_requests_requester_status", "service_requests", ["requester_id", "status"])

    op.create_table(
        "assignments",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("request_id", sa.String, sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_assignments_request_id", "assignments", ["request_id"])
    op.create_index("ix_assignments_driver_id", "assignments", ["driver_id"])
    # One open attempt per request, one live binding per driver
    op.create_index(
        "uq_assignments_pending_request", "assignments", ["request_id"], unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index(
        "uq_assignments_active_driver", "assignments", ["driver_id"], unique=True,
        postgresql_where=sa.text("status IN ('pending', 'accepted')"),
    )

    op.create_table(
        "offers",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("request_id", sa.String, sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("message", sa.String(500), nullable=True),
        sa.Column("eta_minutes", sa.Integer, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_offers_driver_id", "offers", ["driver_id"])
    op.create_index("idx_offers_request_status_price", "offers", ["request_id", "status", "price"])

    op.create_table(
        "cancellation_records",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("request_id", sa.String, sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("requester_id", sa.String, nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=False),
        sa.Column("status_at_cancellation", sa.String(30), nullable=False),
        sa.Column("driver_distance_km", sa.Float, nullable=True),
        sa.Column("driver_was_near", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("suspicious", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("near_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("action_taken", sa.String(20), nullable=False, server_default="none"),
        sa.Column("charge_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("compensation_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_cancellation_records_request_id", "cancellation_records", ["request_id"])
    op.create_index(
        "idx_cancellations_requester_window", "cancellation_records",
        ["requester_id", "driver_was_near", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("cancellation_records")
    op.drop_table("offers")
    op.drop_table("assignments")
    op.drop_table("service_requests")
    op.drop_table("requesters")
    op.drop_table("driver_locations")
    op.drop_table("drivers")
