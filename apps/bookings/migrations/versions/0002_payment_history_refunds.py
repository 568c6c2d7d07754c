from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0002_payment_history_refunds'
down_revision = '0001_initial_bookings'
branch_labels = None
depends_on = None


def _schema():
    if op.get_bind().dialect.name == 'sqlite':
        return None
    return os.getenv('DB_SCHEMA')


def upgrade() -> None:
    schema = _schema()
    prefix = f"{schema}." if schema else ""
    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('booking_id', sa.String(length=36), sa.ForeignKey(f'{prefix}bookings.id'), nullable=False),
        sa.Column('refund_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('refund_method', sa.String(length=50), nullable=False, server_default='original_payment'),
        sa.Column('processed_by', sa.String(length=36), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('refund_amount > 0', name='ck_refunds_amount_positive'),
        schema=schema,
    )
    op.create_index('ix_refunds_booking_processed', 'refunds', ['booking_id', 'processed_at'], unique=False, schema=schema)

    op.create_table(
        'payment_history',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('booking_id', sa.String(length=36), sa.ForeignKey(f'{prefix}bookings.id'), nullable=False),
        sa.Column('previous_status', sa.String(length=16), nullable=False),
        sa.Column('new_status', sa.String(length=16), nullable=False),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('payment_reference', sa.String(length=100), nullable=True),
        sa.Column('updated_by', sa.String(length=36), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP')),
        schema=schema,
    )
    op.create_index('ix_payment_history_booking_created', 'payment_history', ['booking_id', 'created_at'], unique=False, schema=schema)


def downgrade() -> None:
    schema = _schema()
    op.drop_index('ix_payment_history_booking_created', table_name='payment_history', schema=schema)
    op.drop_table('payment_history', schema=schema)
    op.drop_index('ix_refunds_booking_processed', table_name='refunds', schema=schema)
    op.drop_table('refunds', schema=schema)
