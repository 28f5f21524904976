"""
Attribution identity tables, webhook audit log, canonical events and deliveries.

Revision ID: 0001_attribution_core
Revises:
Create Date: 2025-10-01
"""

from alembic import op
import sqlalchemy as sa


revision = '0001_attribution_core'
down_revision = None
branch_labels = None
depends_on = None


def _marketing_columns():
    names = [
        'utm_source', 'utm_medium', 'utm_campaign', 'utm_term', 'utm_content',
        'gclid', 'gbraid', 'wbraid', 'dclid', 'fbclid', 'fbp', 'fbc',
        'ttclid', 'msclkid', 'hubspotutk',
    ]
    return [sa.Column(n, sa.String(256), nullable=True) for n in names]


def upgrade():
    op.create_table(
        'visitors',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('first_seen_at', sa.Integer, nullable=False),
        sa.Column('last_seen_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'sessions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('visitor_id', sa.String(64), sa.ForeignKey('visitors.id'), nullable=False),
        sa.Column('first_seen_at', sa.Integer, nullable=False),
        sa.Column('last_seen_at', sa.Integer, nullable=False),
        sa.Column('ip_first', sa.String(64), nullable=True),
        sa.Column('ua_first', sa.Text(), nullable=True),
    )
    op.create_index('ix_sessions_visitor_id', 'sessions', ['visitor_id'])

    op.create_table(
        'attributions',
        sa.Column('token', sa.String(64), primary_key=True),
        sa.Column('visitor_id', sa.String(64), sa.ForeignKey('visitors.id'), nullable=True),
        sa.Column('session_id', sa.String(64), nullable=True),
        sa.Column('first_touch_at', sa.Integer, nullable=False),
        sa.Column('last_touch_at', sa.Integer, nullable=False),
        sa.Column('first_url', sa.Text(), nullable=True),
        sa.Column('last_url', sa.Text(), nullable=True),
        sa.Column('first_referrer', sa.Text(), nullable=True),
        sa.Column('last_referrer', sa.Text(), nullable=True),
        sa.Column('ip', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        *_marketing_columns(),
    )
    op.create_index('ix_attributions_visitor_id', 'attributions', ['visitor_id'])

    # webhook audit log; the body hash is the dedupe key
    op.create_table(
        'inbound_webhooks',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('source', sa.String(32), nullable=False),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('external_id', sa.String(128), nullable=False),
        sa.Column('body_raw', sa.Text(), nullable=False),
        sa.Column('body_hash', sa.String(64), nullable=False, unique=True),
        sa.Column('received_at', sa.Integer, nullable=False),
    )
    op.create_index('ix_inbound_webhooks_external_id', 'inbound_webhooks', ['external_id'])

    op.create_table(
        'appointments',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('appointment_type_id', sa.String(64), nullable=True),
        sa.Column('calendar_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('datetime', sa.String(64), nullable=True),
        sa.Column('email', sa.String(256), nullable=True),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('first_name', sa.String(128), nullable=True),
        sa.Column('last_name', sa.String(128), nullable=True),
        sa.Column('va_attrib', sa.String(64), nullable=True),
        sa.Column('gclid', sa.String(256), nullable=True),
        sa.Column('ttclid', sa.String(256), nullable=True),
        sa.Column('fbp', sa.String(256), nullable=True),
        sa.Column('fbc', sa.String(256), nullable=True),
        sa.Column('raw_json', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.Integer, nullable=False),
    )

    op.create_table(
        'canonical_events',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('name', sa.String(32), nullable=False),
        sa.Column('event_time', sa.Integer, nullable=False),
        sa.Column('appointment_id', sa.String(64), nullable=True),
        sa.Column('attribution_tok', sa.String(64), nullable=True),
        sa.Column('value', sa.Float, nullable=True),
        sa.Column('currency', sa.String(8), nullable=True),
        sa.Column('event_id', sa.String(128), nullable=False),
        sa.Column('created_at', sa.Integer, nullable=False),
    )
    op.create_index('ix_canonical_events_appointment_id', 'canonical_events', ['appointment_id'])
    op.create_index('ix_canonical_events_event_id', 'canonical_events', ['event_id'])

    op.create_table(
        'deliveries',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('canonical_event_id', sa.String(64), sa.ForeignKey('canonical_events.id'), nullable=False),
        sa.Column('platform', sa.String(16), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.Integer, nullable=True),
        sa.Column('response_code', sa.Integer, nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('request_body', sa.Text(), nullable=True),
        sa.UniqueConstraint('canonical_event_id', 'platform', name='uq_delivery_event_platform'),
    )
    op.create_index('ix_deliveries_canonical_event_id', 'deliveries', ['canonical_event_id'])
    op.create_index('ix_deliveries_status', 'deliveries', ['status'])


def downgrade():
    op.drop_table('deliveries')
    op.drop_table('canonical_events')
    op.drop_table('appointments')
    op.drop_table('inbound_webhooks')
    op.drop_table('attributions')
    op.drop_table('sessions')
    op.drop_table('visitors')
