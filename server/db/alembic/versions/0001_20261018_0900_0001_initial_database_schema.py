"""Initial database schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

LEGAL_PAYMENT_STATUSES = (
    "(status = 'pending_payment' AND payment_status IN ('checkout_created', 'method_collection_pending', 'not_started'))"
    " OR (status = 'confirmed' AND payment_status IN ('held', 'refund_pending', 'refunded', 'transferred'))"
    " OR (status = 'completed' AND payment_status IN ('held', 'refund_pending', 'refunded', 'transferred'))"
    " OR (status = 'cancelled' AND payment_status IN ('failed', 'refund_pending', 'refunded'))"
    " OR (status = 'payment_failed' AND payment_status IN ('failed', 'refund_pending', 'refunded'))"
)


def upgrade() -> None:
    """Upgrade database schema."""
    # Equality operators on text inside a GiST index
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # Create bookings table
    op.create_table('bookings',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('car_id', sa.String(length=64), nullable=False),
        sa.Column('renter_id', sa.String(length=64), nullable=False),
        sa.Column('host_id', sa.String(length=64), nullable=False),
        sa.Column('starts_at', sa.DateTime(), nullable=False),
        sa.Column('ends_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_status', sa.String(length=32), nullable=False),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('amount_total', sa.Integer(), nullable=False),
        sa.Column('deposit_amount', sa.Integer(), server_default='0', nullable=False),
        sa.Column('amount_captured', sa.Integer(), server_default='0', nullable=False),
        sa.Column('amount_refunded', sa.Integer(), server_default='0', nullable=False),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_by', sa.String(length=64), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.CheckConstraint('starts_at < ends_at', name='ck_booking_range_valid'),
        sa.CheckConstraint('amount_total >= 0', name='ck_booking_amount_total_non_negative'),
        sa.CheckConstraint('deposit_amount >= 0', name='ck_booking_deposit_non_negative'),
        sa.CheckConstraint('amount_captured >= 0', name='ck_booking_captured_non_negative'),
        sa.CheckConstraint(
            'amount_refunded >= 0 AND amount_refunded <= amount_captured',
            name='ck_booking_refund_within_capture'
        ),
        sa.CheckConstraint(
            "(status = 'completed') = (completed_at IS NOT NULL)",
            name='ck_booking_completed_at_iff_completed'
        ),
        sa.CheckConstraint(LEGAL_PAYMENT_STATUSES, name='ck_booking_payment_status_legal'),
        sa.CheckConstraint('version > 0', name='ck_booking_version_positive'),
        sa.CheckConstraint('length(car_id) > 0', name='ck_booking_car_id_not_empty'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_bookings_car_id'), 'bookings', ['car_id'], unique=False)
    op.create_index(op.f('ix_bookings_renter_id'), 'bookings', ['renter_id'], unique=False)
    op.create_index(op.f('ix_bookings_host_id'), 'bookings', ['host_id'], unique=False)
    op.create_index(op.f('ix_bookings_ends_at'), 'bookings', ['ends_at'], unique=False)
    op.create_index(op.f('ix_bookings_status'), 'bookings', ['status'], unique=False)
    op.create_index(op.f('ix_bookings_payment_intent_id'), 'bookings', ['payment_intent_id'], unique=False)
    op.create_index(op.f('ix_bookings_charge_id'), 'bookings', ['charge_id'], unique=False)
    op.create_index('ix_bookings_car_range', 'bookings', ['car_id', 'starts_at', 'ends_at'], unique=False)
    op.create_index('ix_bookings_status_ends_at', 'bookings', ['status', 'ends_at'], unique=False)

    # No two active bookings of one car may overlap
    op.execute(
        "ALTER TABLE bookings ADD CONSTRAINT ex_bookings_no_overlap "
        "EXCLUDE USING gist (car_id WITH =, tsrange(starts_at, ends_at) WITH &&) "
        "WHERE (status IN ('pending_payment', 'confirmed'))"
    )

    # Create checkout_sessions table
    op.create_table('checkout_sessions',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('booking_id', sa.Uuid(), nullable=False),
        sa.Column('provider_session_id', sa.String(length=255), nullable=False),
        sa.Column('provider_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('last_reconciled_at', sa.DateTime(), nullable=True),
        sa.Column('closed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "status IN ('created', 'completed', 'expired')",
            name='ck_checkout_session_status_valid'
        ),
        sa.CheckConstraint(
            "(status = 'created') = (closed_at IS NULL)",
            name='ck_checkout_session_closed_at_iff_closed'
        ),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_session_id')
    )
    op.create_index(op.f('ix_checkout_sessions_booking_id'), 'checkout_sessions', ['booking_id'], unique=False)
    op.create_index(op.f('ix_checkout_sessions_status'), 'checkout_sessions', ['status'], unique=False)
    op.create_index(op.f('ix_checkout_sessions_created_at'), 'checkout_sessions', ['created_at'], unique=False)
    op.create_index(
        op.f('ix_checkout_sessions_provider_payment_intent_id'),
        'checkout_sessions', ['provider_payment_intent_id'], unique=False
    )
    op.create_index(
        'uq_checkout_sessions_one_open_per_booking', 'checkout_sessions', ['booking_id'],
        unique=True, postgresql_where=sa.text("status = 'created'")
    )

    # Create webhook_events table
    op.create_table('webhook_events',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('provider_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('payload', sa.Text(), nullable=False),
        sa.Column('booking_id', sa.Uuid(), nullable=True),
        sa.Column('received_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('outcome', sa.String(length=20), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_event_id')
    )
    op.create_index(op.f('ix_webhook_events_event_type'), 'webhook_events', ['event_type'], unique=False)
    op.create_index(op.f('ix_webhook_events_booking_id'), 'webhook_events', ['booking_id'], unique=False)

    # Create deposit_cases table
    op.create_table('deposit_cases',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('booking_id', sa.Uuid(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('amount_claimed', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('filed_by', sa.String(length=64), nullable=True),
        sa.Column('provider_dispute_id', sa.String(length=255), nullable=True),
        sa.Column('filed_at', sa.DateTime(), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolution_note', sa.Text(), nullable=True),
        sa.CheckConstraint('amount_claimed >= 0', name='ck_deposit_case_amount_non_negative'),
        sa.CheckConstraint(
            "status IN ('case_submitted', 'under_review', 'retained', 'reversed')",
            name='ck_deposit_case_status_valid'
        ),
        sa.CheckConstraint(
            "(status IN ('retained', 'reversed')) = (resolved_at IS NOT NULL)",
            name='ck_deposit_case_resolved_at_iff_resolved'
        ),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_dispute_id')
    )
    op.create_index(op.f('ix_deposit_cases_booking_id'), 'deposit_cases', ['booking_id'], unique=False)
    op.create_index(op.f('ix_deposit_cases_status'), 'deposit_cases', ['status'], unique=False)
    op.create_index(
        'uq_deposit_cases_one_open_claim_per_booking', 'deposit_cases', ['booking_id'],
        unique=True,
        postgresql_where=sa.text("source = 'host_claim' AND status IN ('case_submitted', 'under_review')")
    )

    # Create refund_requests table
    op.create_table('refund_requests',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('booking_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('provider_refund_id', sa.String(length=255), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount > 0', name='ck_refund_request_amount_positive'),
        sa.CheckConstraint('length(idempotency_key) > 0', name='ck_refund_request_key_not_empty'),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index(op.f('ix_refund_requests_booking_id'), 'refund_requests', ['booking_id'], unique=False)
    op.create_index(op.f('ix_refund_requests_status'), 'refund_requests', ['status'], unique=False)

    # Create host_accounts table
    op.create_table('host_accounts',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('host_id', sa.String(length=64), nullable=False),
        sa.Column('provider_account_id', sa.String(length=255), nullable=False),
        sa.Column('details_submitted', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('payouts_enabled', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('host_id'),
        sa.UniqueConstraint('provider_account_id')
    )

    # Create host_payouts table
    op.create_table('host_payouts',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('booking_id', sa.Uuid(), nullable=False),
        sa.Column('host_id', sa.String(length=64), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('destination_account_id', sa.String(length=255), nullable=True),
        sa.Column('provider_transfer_id', sa.String(length=255), nullable=True),
        sa.Column('reversal_reason', sa.String(length=64), nullable=True),
        sa.Column('provider_reversal_id', sa.String(length=255), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('transferred_at', sa.DateTime(), nullable=True),
        sa.Column('reversed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_host_payout_amount_positive'),
        sa.CheckConstraint(
            "status IN ('queued', 'submitting', 'ambiguous', 'transferred', 'failed', "
            "'blocked', 'reversal_queued', 'reversed')",
            name='ck_host_payout_status_valid'
        ),
        sa.CheckConstraint(
            "status NOT IN ('transferred', 'reversal_queued', 'reversed') OR provider_transfer_id IS NOT NULL",
            name='ck_host_payout_transfer_recorded'
        ),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('booking_id'),
        sa.UniqueConstraint('idempotency_key')
    )
    op.create_index(op.f('ix_host_payouts_host_id'), 'host_payouts', ['host_id'], unique=False)
    op.create_index(op.f('ix_host_payouts_status'), 'host_payouts', ['status'], unique=False)

    # Create idempotency_records table
    op.create_table('idempotency_records',
        sa.Column('id', sa.Uuid(), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('operation', sa.String(length=64), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('request_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('status_code', sa.Integer(), nullable=False),
        sa.Column('response_body', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('length(idempotency_key) > 0', name='ck_idempotency_key_not_empty'),
        sa.CheckConstraint('status_code BETWEEN 200 AND 599', name='ck_idempotency_status_code'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('actor_id', 'operation', 'idempotency_key', name='uq_idempotency_actor_operation_key')
    )
    op.create_index(op.f('ix_idempotency_records_expires_at'), 'idempotency_records', ['expires_at'], unique=False)


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table('idempotency_records')
    op.drop_table('host_payouts')
    op.drop_table('host_accounts')
    op.drop_table('refund_requests')
    op.drop_table('deposit_cases')
    op.drop_table('webhook_events')
    op.drop_table('checkout_sessions')
    op.drop_table('bookings')
