"""Initial schema: catalog, passengers, seat holds, bookings and payments.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("hashed_password", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "stations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(10), nullable=False),
        sa.Column("city", sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_stations_id", "stations", ["id"])
    op.create_index("ix_stations_code", "stations", ["code"], unique=True)

    op.create_table(
        "routes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("origin_station_id", sa.Integer(), sa.ForeignKey("stations.id"), nullable=False),
        sa.Column("destination_station_id", sa.Integer(), sa.ForeignKey("stations.id"), nullable=False),
        sa.Column("distance_km", sa.Integer(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("distance_km > 0", name="check_route_distance_positive"),
        sa.CheckConstraint("origin_station_id <> destination_station_id", name="check_route_distinct_stations"),
    )
    op.create_index("ix_routes_id", "routes", ["id"])
    # Train search filters on the station pair
    op.create_index("ix_routes_origin_station_id", "routes", ["origin_station_id"])
    op.create_index("ix_routes_destination_station_id", "routes", ["destination_station_id"])

    op.create_table(
        "trains",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("number", sa.String(20), nullable=False),
        sa.Column("route_id", sa.Integer(), sa.ForeignKey("routes.id"), nullable=False),
        sa.Column("departure_time", sa.Time(), nullable=False),
        sa.Column("arrival_time", sa.Time(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_trains_id", "trains", ["id"])
    op.create_index("ix_trains_number", "trains", ["number"], unique=True)
    op.create_index("ix_trains_route_id", "trains", ["route_id"])

    op.create_table(
        "train_classes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("train_id", sa.Integer(), sa.ForeignKey("trains.id"), nullable=False),
        sa.Column("class_type", sa.String(20), nullable=False),
        sa.Column("total_seats", sa.Integer(), nullable=False),
        sa.Column("price_per_km", sa.Float(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("train_id", "class_type", name="uq_train_class_type"),
        sa.CheckConstraint("total_seats > 0", name="check_train_class_seats_positive"),
        sa.CheckConstraint(
            "class_type IN ('economy', 'first_class', 'business')", name="check_train_class_type"
        ),
    )
    op.create_index("ix_train_classes_id", "train_classes", ["id"])
    op.create_index("ix_train_classes_train_id", "train_classes", ["train_id"])

    op.create_table(
        "seats",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("train_class_id", sa.Integer(), sa.ForeignKey("train_classes.id"), nullable=False),
        sa.Column("seat_number", sa.String(10), nullable=False),
        sa.Column("is_window", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.UniqueConstraint("train_class_id", "seat_number", name="uq_seat_number_per_class"),
    )
    op.create_index("ix_seats_id", "seats", ["id"])
    op.create_index("ix_seats_train_class_id", "seats", ["train_class_id"])

    op.create_table(
        "passengers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("id_number", sa.String(50), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "id_number", name="uq_passenger_id_number_per_user"),
    )
    op.create_index("ix_passengers_id", "passengers", ["id"])
    op.create_index("ix_passengers_user_id", "passengers", ["user_id"])

    # One row per (seat, train, date): two concurrent INSERTs for the same key
    # cannot both succeed.
    op.create_table(
        "seat_holds",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("seat_id", sa.Integer(), sa.ForeignKey("seats.id"), nullable=False),
        sa.Column("train_id", sa.Integer(), sa.ForeignKey("trains.id"), nullable=False),
        sa.Column("travel_date", sa.Date(), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("seat_id", "train_id", "travel_date", name="uq_seat_hold_key"),
    )
    op.create_index("ix_seat_holds_id", "seat_holds", ["id"])
    op.create_index("ix_seat_holds_user_id", "seat_holds", ["user_id"])
    op.create_index("ix_seat_holds_train_date", "seat_holds", ["train_id", "travel_date"])

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_reference", sa.String(20), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("passenger_id", sa.Integer(), sa.ForeignKey("passengers.id"), nullable=False),
        sa.Column("train_id", sa.Integer(), sa.ForeignKey("trains.id"), nullable=False),
        sa.Column("seat_id", sa.Integer(), sa.ForeignKey("seats.id"), nullable=False),
        sa.Column("travel_date", sa.Date(), nullable=False),
        sa.Column("class_type", sa.String(20), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.CheckConstraint("total_amount > 0", name="check_booking_amount_positive"),
        sa.CheckConstraint("status IN ('pending', 'confirmed', 'cancelled')", name="check_booking_status"),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_booking_reference", "bookings", ["booking_reference"], unique=True)
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    # PARTIAL UNIQUE INDEX: at most one confirmed booking per seat per trip.
    # Cancelled rows are unconstrained.
    op.create_index(
        "uq_bookings_confirmed_seat",
        "bookings",
        ["seat_id", "train_id", "travel_date"],
        unique=True,
        postgresql_where=sa.text("status = 'confirmed'"),
    )
    # One open checkout per user per seat
    op.create_index(
        "uq_bookings_pending_checkout",
        "bookings",
        ["user_id", "seat_id", "train_id", "travel_date"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )
    # Seat map: confirmed seats for one train on one day
    op.create_index("ix_bookings_train_date_status", "bookings", ["train_id", "travel_date", "status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("booking_id", sa.Integer(), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False, server_default="mpesa"),
        sa.Column("checkout_request_id", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column("receipt_number", sa.String(50), nullable=True),
        sa.Column("result_code", sa.String(20), nullable=True),
        sa.Column("result_desc", sa.String(255), nullable=True),
        sa.Column("extra", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="check_payment_amount_positive"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')", name="check_payment_status"
        ),
    )
    op.create_index("ix_payments_id", "payments", ["id"])
    op.create_index("ix_payments_booking_id", "payments", ["booking_id"])
    op.create_index("ix_payments_checkout_request_id", "payments", ["checkout_request_id"], unique=True)


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("bookings")
    op.drop_table("seat_holds")
    op.drop_table("passengers")
    op.drop_table("seats")
    op.drop_table("train_classes")
    op.drop_table("trains")
    op.drop_table("routes")
    op.drop_table("stations")
    op.drop_table("users")
