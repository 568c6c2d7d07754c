from alembic import op
import sqlalchemy as sa
import os

# revision identifiers, used by Alembic.
revision = '0001_initial_bookings'
down_revision = None
branch_labels = None
depends_on = None


def _schema():
    if op.get_bind().dialect.name == 'sqlite':
        return None
    return os.getenv('DB_SCHEMA')


def _now():
    # CURRENT_TIMESTAMP works on both SQLite and Postgres; NOW() does not.
    return sa.text('CURRENT_TIMESTAMP')


def upgrade() -> None:
    schema = _schema()
    prefix = f"{schema}." if schema else ""
    op.create_table(
        'properties',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('host_id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('price_per_night', sa.Numeric(10, 2), nullable=False),
        sa.Column('cleaning_fee', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('security_deposit', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('max_guests', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('min_nights', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('max_nights', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('advance_booking_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_instant_book', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_now()),
        schema=schema,
    )
    op.create_index('ix_properties_host_id', 'properties', ['host_id'], unique=False, schema=schema)

    op.create_table(
        'bookings',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('property_id', sa.Integer(), sa.ForeignKey(f'{prefix}properties.id'), nullable=False),
        sa.Column('guest_id', sa.String(length=36), nullable=False),
        sa.Column('host_id', sa.String(length=36), nullable=False),
        sa.Column('check_in_date', sa.Date(), nullable=False),
        sa.Column('check_out_date', sa.Date(), nullable=False),
        sa.Column('guests_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('base_price', sa.Numeric(10, 2), nullable=False),
        sa.Column('cleaning_fee', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('security_deposit', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('service_fee', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('payment_reference', sa.String(length=100), nullable=True),
        sa.Column('special_requests', sa.Text(), nullable=True),
        sa.Column('host_notes', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.String(length=16), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=_now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=_now()),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('check_out_date > check_in_date', name='ck_bookings_dates'),
        sa.CheckConstraint('total_amount >= 0', name='ck_bookings_total_nonneg'),
        schema=schema,
    )
    op.create_index('ix_bookings_property_dates', 'bookings', ['property_id', 'check_in_date', 'check_out_date'], unique=False, schema=schema)
    op.create_index('ix_bookings_guest_status', 'bookings', ['guest_id', 'status'], unique=False, schema=schema)
    op.create_index('ix_bookings_host_status', 'bookings', ['host_id', 'status'], unique=False, schema=schema)
    op.create_index('ix_bookings_payment_status', 'bookings', ['payment_status'], unique=False, schema=schema)


def downgrade() -> None:
    schema = _schema()
    op.drop_index('ix_bookings_payment_status', table_name='bookings', schema=schema)
    op.drop_index('ix_bookings_host_status', table_name='bookings', schema=schema)
    op.drop_index('ix_bookings_guest_status', table_name='bookings', schema=schema)
    op.drop_index('ix_bookings_property_dates', table_name='bookings', schema=schema)
    op.drop_table('bookings', schema=schema)
    op.drop_index('ix_properties_host_id', table_name='properties', schema=schema)
    op.drop_table('properties', schema=schema)
