from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("giver_id", sa.String(), nullable=False),
        sa.Column("receiver_id", sa.String(), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="25"),
        sa.Column("extension_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gross_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("net_payout_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="confirmed"),
        sa.Column("giver_joined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seeker_credit_earned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("elapsed_seconds", sa.Integer(), nullable=True),
        sa.Column("end_reason", sa.String(), nullable=True),
        sa.Column("payout_net_cents", sa.Integer(), nullable=True),
        sa.Column("refund_gross_cents", sa.Integer(), nullable=True),
        sa.Column("payout_status", sa.String(), nullable=True, server_default="pending"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_bookings_booking_id", "bookings", ["booking_id"], unique=True)
    op.create_index("ix_bookings_giver_id", "bookings", ["giver_id"], unique=False)
    op.create_index("ix_bookings_receiver_id", "bookings", ["receiver_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)

    op.create_table(
        "session_states",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("current_phase", sa.String(), nullable=False, server_default="transmission"),
        sa.Column("giver_can_speak", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("transmission_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reflection_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("validation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("emergence_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extension_pending", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("extension_id", sa.String(), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_reason", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_session_states_booking_id", "session_states", ["booking_id"], unique=True)

    op.create_table(
        "extensions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("extension_id", sa.String(), nullable=False),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("requested_by", sa.String(), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("giver_response", sa.String(), nullable=True),
        sa.Column("giver_responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_extensions_extension_id", "extensions", ["extension_id"], unique=True)
    op.create_index("ix_extensions_booking_id", "extensions", ["booking_id"], unique=False)
    op.create_index("ix_extensions_expires_at", "extensions", ["expires_at"], unique=False)
    op.create_index("ix_extensions_status", "extensions", ["status"], unique=False)
    op.create_index(
        "uq_extensions_pending_per_booking",
        "extensions",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "credits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("credit_id", sa.String(), nullable=False, unique=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("source_booking_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("source_booking_id", "reason", name="uq_credits_booking_reason"),
    )
    op.create_index("ix_credits_user_id", "credits", ["user_id"], unique=False)
    op.create_index("ix_credits_source_booking_id", "credits", ["source_booking_id"], unique=False)

    op.create_table(
        "session_milestones",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("booking_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_session_milestones_booking_id", "session_milestones", ["booking_id"], unique=False)

    op.create_table(
        "giver_availability",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("giver_id", sa.String(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_booked", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_giver_availability_giver_id", "giver_availability", ["giver_id"], unique=False)
    op.create_index("ix_giver_availability_start_time", "giver_availability", ["start_time"], unique=False)

    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("stripe_account_id", sa.String(), nullable=True),
        sa.Column("stripe_onboarding_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_profiles_user_id", "profiles", ["user_id"], unique=True)

def downgrade():
    op.drop_index("ix_profiles_user_id", table_name="profiles")
    op.drop_table("profiles")
    op.drop_index("ix_giver_availability_start_time", table_name="giver_availability")
    op.drop_index("ix_giver_availability_giver_id", table_name="giver_availability")
    op.drop_table("giver_availability")
    op.drop_index("ix_session_milestones_booking_id", table_name="session_milestones")
    op.drop_table("session_milestones")
    op.drop_index("ix_credits_source_booking_id", table_name="credits")
    op.drop_index("ix_credits_user_id", table_name="credits")
    op.drop_table("credits")
    op.drop_index("uq_extensions_pending_per_booking", table_name="extensions")
    op.drop_index("ix_extensions_status", table_name="extensions")
    op.drop_index("ix_extensions_expires_at", table_name="extensions")
    op.drop_index("ix_extensions_booking_id", table_name="extensions")
    op.drop_index("ix_extensions_extension_id", table_name="extensions")
    op.drop_table("extensions")
    op.drop_index("ix_session_states_booking_id", table_name="session_states")
    op.drop_table("session_states")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_receiver_id", table_name="bookings")
    op.drop_index("ix_bookings_giver_id", table_name="bookings")
    op.drop_index("ix_bookings_booking_id", table_name="bookings")
    op.drop_table("bookings")
