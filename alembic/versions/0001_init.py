from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'products',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('price', sa.BigInteger, nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='VND'),
        sa.Column('billing_cycle', sa.String(50), nullable=True),
        sa.Column('stock', sa.Integer, nullable=False, server_default='0'),
        sa.Column('reserved', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_preloaded_account', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('completion_instructions', sa.Text, nullable=False, server_default=''),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_code', sa.Integer, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('customer_name_snapshot', sa.String(200), nullable=False),
        sa.Column('customer_email_snapshot', sa.String(255), nullable=False),
        sa.Column('customer_phone_snapshot', sa.String(50), nullable=False),
        sa.Column('note', sa.Text, nullable=True),
        sa.Column('order_total', sa.BigInteger, nullable=False),
        sa.Column('order_status', sa.String(20), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False),
        sa.Column('gateway_order_code', sa.BigInteger, nullable=True),
        sa.Column('payment_link_id', sa.String(100), nullable=True),
        sa.Column('checkout_url', sa.String(500), nullable=True),
        sa.Column('qr_code', sa.Text, nullable=True),
        sa.Column('gateway_status', sa.String(30), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('confirmed_at', sa.DateTime, nullable=True),
        sa.Column('processing_at', sa.DateTime, nullable=True),
        sa.Column('completed_at', sa.DateTime, nullable=True),
        sa.Column('cancelled_at', sa.DateTime, nullable=True),
        sa.Column('cancel_reason', sa.String(500), nullable=True),
        sa.Column('payment_reminder_sent_at', sa.DateTime, nullable=True),
        sa.Column('subscriptions_created_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_orders_order_code', 'orders', ['order_code'], unique=True)
    op.create_index('ix_orders_gateway_order_code', 'orders', ['gateway_order_code'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_order_status', 'orders', ['order_status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('product_name_snapshot', sa.String(200), nullable=False),
        sa.Column('unit_price', sa.BigInteger, nullable=False),
        sa.Column('currency', sa.String(10), nullable=False, server_default='VND'),
        sa.Column('required_fields_data', sa.JSON, nullable=True),
        sa.Column('delivered_account', sa.Text, nullable=True),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'preloaded_accounts',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False),
        sa.Column('account', sa.String(500), nullable=False),
        sa.Column('used', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('used_at', sa.DateTime, nullable=True),
        sa.Column('used_for_order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_preloaded_accounts_product_id', 'preloaded_accounts', ['product_id'])
    op.create_index('ix_preloaded_accounts_used', 'preloaded_accounts', ['used'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('order_item_id', sa.Integer, sa.ForeignKey('order_items.id'), nullable=True),
        sa.Column('customer_email', sa.String(255), nullable=False),
        sa.Column('service_name', sa.String(200), nullable=False),
        sa.Column('contact_phone', sa.String(50), nullable=True),
        sa.Column('start_date', sa.DateTime, nullable=False),
        sa.Column('end_date', sa.DateTime, nullable=False),
        sa.Column('pre_expiry_notified', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_subscriptions_order_id', 'subscriptions', ['order_id'])
    op.create_index('ix_subscriptions_customer_email', 'subscriptions', ['customer_email'])
    op.create_index('ix_subscriptions_end_date', 'subscriptions', ['end_date'])

def downgrade():
    op.drop_table('subscriptions')
    op.drop_table('preloaded_accounts')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('products')
