"""initial escrow marketplace schema

Revision ID: 3e7a1c9d2b40
Revises:
Create Date: 2026-10-19 09:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = '3e7a1c9d2b40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='user'),
        sa.Column('payout_account_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'listings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(length=160), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('availability_mode', sa.String(length=16), nullable=False, server_default='single'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('reserved_until', sa.DateTime(), nullable=True),
        sa.Column('holder_order_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_listings_seller_id', 'listings', ['seller_id'])
    op.create_index('ix_listings_status', 'listings', ['status'])
    op.create_index('ix_listings_reserved_until', 'listings', ['reserved_until'])

    op.create_table(
        'offers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('requirements', sa.Text(), nullable=True),
        sa.Column('expected_delivery', sa.DateTime(), nullable=True),
        sa.Column('payment_ref', sa.String(length=128), nullable=True),
        sa.Column('client_secret', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='pending_payment'),
        sa.Column('rejection_reason', sa.String(length=240), nullable=True),
        sa.Column('last_payment_error', sa.String(length=240), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('accepted_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    for col in ('buyer_id', 'seller_id', 'listing_id', 'payment_ref', 'status', 'order_id'):
        op.create_index(f'ix_offers_{col}', 'offers', [col])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('buyer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('listing_id', sa.Integer(), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('offer_id', sa.Integer(), sa.ForeignKey('offers.id'), nullable=True),
        sa.Column('order_type', sa.String(length=24), nullable=False, server_default='accepted_offer'),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='pending_payment'),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('platform_fee_minor', sa.Integer(), nullable=True),
        sa.Column('seller_payout_minor', sa.Integer(), nullable=True),
        sa.Column('fee_bps', sa.Integer(), nullable=True),
        sa.Column('revisions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_revisions', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('payment_ref', sa.String(length=128), nullable=True),
        sa.Column('last_payment_error', sa.String(length=240), nullable=True),
        sa.Column('payment_captured', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('captured_at', sa.DateTime(), nullable=True),
        sa.Column('payment_released', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('refunded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('refund_ref', sa.String(length=128), nullable=True),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('requirements', sa.Text(), nullable=True),
        sa.Column('delivery_message', sa.Text(), nullable=True),
        sa.Column('delivery_files_json', sa.Text(), nullable=True),
        sa.Column('chat_channel_ref', sa.String(length=128), nullable=True),
        sa.Column('cancelled_by', sa.String(length=16), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=240), nullable=True),
        sa.Column('dispute_reason', sa.String(length=240), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('disputed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    for col in ('buyer_id', 'seller_id', 'listing_id', 'offer_id', 'status', 'payment_ref'):
        op.create_index(f'ix_orders_{col}', 'orders', [col])

    op.create_table(
        'order_revision_notes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('revision_number', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('requested_by', sa.Integer(), nullable=True),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_order_revision_notes_order_id', 'order_revision_notes', ['order_id'])

    op.create_table(
        'order_transitions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('from_status', sa.String(length=24), nullable=False, server_default=''),
        sa.Column('to_status', sa.String(length=24), nullable=False),
        sa.Column('actor_type', sa.String(length=16), nullable=False, server_default='system'),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('reason', sa.String(length=240), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_order_transitions_order_id', 'order_transitions', ['order_id'])

    op.create_table(
        'deliveries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('revision_number', sa.Integer(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('attachments_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('is_final', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='pending_review'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('order_id', 'revision_number', name='uq_delivery_order_revision'),
    )
    op.create_index('ix_deliveries_order_id', 'deliveries', ['order_id'])

    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('seller_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount_minor', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False, server_default='usd'),
        sa.Column('payment_method', sa.String(length=24), nullable=False, server_default='gateway'),
        sa.Column('destination', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('transfer_ref', sa.String(length=128), nullable=True),
        sa.Column('failure_reason', sa.String(length=240), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_withdrawals_seller_id', 'withdrawals', ['seller_id'])
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'])
    op.create_index('ix_withdrawals_transfer_ref', 'withdrawals', ['transfer_ref'], unique=True)

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='stripe'),
        sa.Column('event_id', sa.String(length=128), nullable=False, unique=True),
        sa.Column('event_type', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='received'),
        sa.Column('outcome', sa.String(length=64), nullable=True),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('payload_hash', sa.String(length=128), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_webhook_events_reference', 'webhook_events', ['reference'])

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('subject_type', sa.String(length=40), nullable=True),
        sa.Column('subject_id', sa.String(length=64), nullable=True),
        sa.Column('amount_minor', sa.Integer(), nullable=True),
        sa.Column('request_id', sa.String(length=80), nullable=True),
        sa.Column('idempotency_key', sa.String(length=180), nullable=True, unique=True),
        sa.Column('severity', sa.String(length=16), nullable=False, server_default='INFO'),
        sa.Column('metadata_json', sa.Text(), nullable=True),
    )
    op.create_index('ix_audit_events_created_at', 'audit_events', ['created_at'])
    op.create_index('ix_audit_events_event_type', 'audit_events', ['event_type'])
    op.create_index('ix_audit_events_actor_user_id', 'audit_events', ['actor_user_id'])

    op.create_table(
        'idempotency_keys',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('scope', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('response_json', sa.Text(), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('scope', 'user_id', 'key', name='uq_idempotency_scope_user_key'),
    )

    op.create_table(
        'job_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_name', sa.String(length=64), nullable=False),
        sa.Column('ran_at', sa.DateTime(), nullable=False),
        sa.Column('ok', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
    )
    op.create_index('ix_job_runs_job_name', 'job_runs', ['job_name'])
    op.create_index('ix_job_runs_ran_at', 'job_runs', ['ran_at'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('event', sa.String(length=48), nullable=False),
        sa.Column('subject_type', sa.String(length=16), nullable=True),
        sa.Column('subject_id', sa.Integer(), nullable=True),
        sa.Column('amount_minor', sa.Integer(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False, server_default=''),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('provider', sa.String(length=32), nullable=True),
        sa.Column('provider_ref', sa.String(length=120), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.String(length=240), nullable=True),
        sa.Column('meta', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_status', 'notifications', ['status'])


def downgrade():
    for table in (
        'notifications',
        'job_runs',
        'idempotency_keys',
        'audit_events',
        'webhook_events',
        'withdrawals',
        'deliveries',
        'order_transitions',
        'order_revision_notes',
        'orders',
        'offers',
        'listings',
        'users',
    ):
        op.drop_table(table)
