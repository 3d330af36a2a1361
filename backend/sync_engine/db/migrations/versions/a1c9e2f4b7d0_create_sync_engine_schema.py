"""create sync engine schema

Revision ID: a1c9e2f4b7d0
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = 'a1c9e2f4b7d0'
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')
MONEY = sa.Numeric(18, 4)


def _ts(name, nullable=True, server_now=False):
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_now else None,
    )


def upgrade() -> None:
    # ---- 队列 / 水位线 / 凭证 ----
    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('platform', sa.String(length=16), nullable=False),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        sa.Column('error', JSON_TYPE, nullable=True),
        sa.Column('records_synced', sa.Integer(), nullable=True),
        sa.Column('claimed_by', sa.String(length=128), nullable=True),
        _ts('created_at', nullable=False, server_now=True),
        _ts('started_at'),
        _ts('completed_at'),
        sa.CheckConstraint("platform IN ('SHOPIFY','META')", name=op.f('ck_sync_jobs_platform')),
        sa.CheckConstraint(
            "job_type IN ('HISTORICAL_INIT','HISTORICAL_REBUILD','INCREMENTAL')",
            name=op.f('ck_sync_jobs_job_type'),
        ),
        sa.CheckConstraint(
            "status IN ('QUEUED','IN_PROGRESS','SUCCEEDED','FAILED')",
            name=op.f('ck_sync_jobs_status'),
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_sync_jobs')),
    )
    op.create_index('ix_sync_jobs_status_created', 'sync_jobs', ['status', 'created_at'])
    op.create_index(
        'uq_sync_jobs_queued_per_shop',
        'sync_jobs',
        ['shop_id', 'platform', 'job_type'],
        unique=True,
        postgresql_where=sa.text("status = 'QUEUED'"),
        sqlite_where=sa.text("status = 'QUEUED'"),
    )

    op.create_table(
        'sync_cursors',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('platform', sa.String(length=16), nullable=False),
        sa.Column('watermark', JSON_TYPE, nullable=True),
        _ts('last_success_at'),
        _ts('created_at', nullable=False, server_now=True),
        _ts('updated_at', nullable=False, server_now=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_sync_cursors')),
        sa.UniqueConstraint('shop_id', 'platform', name='uq_sync_cursors_shop_platform'),
    )

    op.create_table(
        'shops',
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('domain', sa.String(length=255), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        _ts('created_at', nullable=False, server_now=True),
        sa.PrimaryKeyConstraint('shop_id', name=op.f('pk_shops')),
    )

    op.create_table(
        'shop_credentials',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('platform', sa.String(length=16), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        _ts('expires_at'),
        sa.Column('metadata', JSON_TYPE, nullable=True),
        _ts('created_at', nullable=False, server_now=True),
        _ts('updated_at', nullable=False, server_now=True),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_shop_credentials')),
        sa.UniqueConstraint('shop_id', 'platform', name='uq_shop_credentials_shop_platform'),
    )

    # ---- staging ----
    op.create_table(
        'staged_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('record_kind', sa.String(length=32), nullable=False),
        sa.Column('natural_id', sa.String(length=512), nullable=False),
        sa.Column('parent_id', sa.String(length=255), nullable=True),
        sa.Column('schema_version', sa.Integer(), nullable=False),
        sa.Column('fields', JSON_TYPE, nullable=False),
        sa.Column('raw', JSON_TYPE, nullable=True),
        _ts('received_at', nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_staged_records')),
        sa.UniqueConstraint('shop_id', 'record_kind', 'natural_id', name='uq_staged_records_natural_key'),
    )
    op.create_index(
        'ix_staged_records_shop_kind_received',
        'staged_records',
        ['shop_id', 'record_kind', 'received_at'],
    )

    # ---- 仓库层 ----
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('shopify_gid', sa.String(length=255), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('financial_status', sa.String(length=32), nullable=True),
        sa.Column('fulfillment_status', sa.String(length=32), nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('subtotal_price', MONEY, nullable=True),
        sa.Column('total_price', MONEY, nullable=True),
        sa.Column('total_tax', MONEY, nullable=True),
        sa.Column('total_discounts', MONEY, nullable=True),
        _ts('cancelled_at'),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
        _ts('synced_at', nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_orders')),
        sa.UniqueConstraint('shop_id', 'shopify_gid', name='uq_orders_shop_gid'),
    )

    op.create_table(
        'order_line_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('shopify_gid', sa.String(length=255), nullable=False),
        sa.Column('order_gid', sa.String(length=255), nullable=False),
        sa.Column('title', sa.String(length=512), nullable=True),
        sa.Column('sku', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', MONEY, nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        _ts('synced_at', nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_order_line_items')),
        sa.UniqueConstraint('shop_id', 'shopify_gid', name='uq_order_line_items_shop_gid'),
    )

    op.create_table(
        'order_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('shopify_gid', sa.String(length=255), nullable=False),
        sa.Column('order_gid', sa.String(length=255), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=True),
        sa.Column('gateway', sa.String(length=64), nullable=True),
        sa.Column('amount', MONEY, nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        sa.Column('test', sa.Boolean(), nullable=False),
        _ts('processed_at'),
        _ts('synced_at', nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_order_transactions')),
        sa.UniqueConstraint('shop_id', 'shopify_gid', name='uq_order_transactions_shop_gid'),
    )

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('shopify_gid', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=True),
        _ts('issued_at'),
        sa.Column('net_amount', MONEY, nullable=True),
        sa.Column('currency', sa.String(length=8), nullable=True),
        _ts('synced_at', nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payouts')),
        sa.UniqueConstraint('shop_id', 'shopify_gid', name='uq_payouts_shop_gid'),
    )

    op.create_table(
        'ad_entities',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('entity_type', sa.String(length=16), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=512), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=True),
        sa.Column('parent_id', sa.String(length=64), nullable=True),
        sa.Column('attributes', JSON_TYPE, nullable=True),
        _ts('synced_at', nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_ad_entities')),
        sa.UniqueConstraint('shop_id', 'entity_type', 'entity_id', name='uq_ad_entities_natural_key'),
    )

    op.create_table(
        'ad_insights_daily',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('shop_id', sa.String(length=128), nullable=False),
        sa.Column('insight_key', sa.String(length=512), nullable=False),
        sa.Column('level', sa.String(length=16), nullable=False),
        sa.Column('breakdown', sa.String(length=16), nullable=False),
        sa.Column('breakdown_values', JSON_TYPE, nullable=True),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('date_start', sa.Date(), nullable=False),
        sa.Column('date_stop', sa.Date(), nullable=False),
        sa.Column('spend', MONEY, nullable=True),
        sa.Column('impressions', sa.Integer(), nullable=True),
        sa.Column('clicks', sa.Integer(), nullable=True),
        sa.Column('reach', sa.Integer(), nullable=True),
        sa.Column('purchases', MONEY, nullable=True),
        sa.Column('purchase_value', MONEY, nullable=True),
        sa.Column('leads', MONEY, nullable=True),
        sa.Column('add_to_cart', MONEY, nullable=True),
        sa.Column('view_content', MONEY, nullable=True),
        _ts('synced_at', nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_ad_insights_daily')),
        sa.UniqueConstraint('shop_id', 'insight_key', name='uq_ad_insights_daily_natural_key'),
    )


def downgrade() -> None:
    for table in (
        'ad_insights_daily', 'ad_entities', 'payouts', 'order_transactions',
        'order_line_items', 'orders',
    ):
        op.drop_table(table)
    op.drop_index('ix_staged_records_shop_kind_received', table_name='staged_records')
    op.drop_table('staged_records')
    op.drop_table('shop_credentials')
    op.drop_table('shops')
    op.drop_table('sync_cursors')
    op.drop_index('uq_sync_jobs_queued_per_shop', table_name='sync_jobs')
    op.drop_index('ix_sync_jobs_status_created', table_name='sync_jobs')
    op.drop_table('sync_jobs')
