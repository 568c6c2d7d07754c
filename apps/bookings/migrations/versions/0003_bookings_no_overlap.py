from alembic import op
import os

# revision identifiers, used by Alembic.
revision = '0003_bookings_no_overlap'
down_revision = '0002_payment_history_refunds'
branch_labels = None
depends_on = None


def _table():
    schema = os.getenv('DB_SCHEMA')
    return f"{schema}.bookings" if schema else "bookings"


def upgrade() -> None:
    # Postgres only: SQLite has no exclusion constraints, the service-level
    # property lock is the guard there.
    if op.get_bind().dialect.name != 'postgresql':
        return
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
    op.execute(
        f"""
        ALTER TABLE {_table()}
        ADD CONSTRAINT ex_bookings_no_overlap
        EXCLUDE USING gist (
            property_id WITH =,
            daterange(check_in_date, check_out_date, '[)') WITH &&
        )
        WHERE (status IN ('pending', 'confirmed'))
        """
    )


def downgrade() -> None:
    if op.get_bind().dialect.name != 'postgresql':
        return
    op.execute(f"ALTER TABLE {_table()} DROP CONSTRAINT IF EXISTS ex_bookings_no_overlap")
