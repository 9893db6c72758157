"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('buses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('registration_number', sa.String(length=64), nullable=False),
        sa.Column('bus_type', sa.String(length=32), nullable=False, server_default='seater'),
        sa.Column('total_seats', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('registration_number', name='buses_registration_number_key'),
    )
    op.create_index('ix_buses_registration_number', 'buses', ['registration_number'], unique=False)

    op.create_table('seatmaps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('bus_id', sa.Integer(), nullable=False),
        sa.Column('layout', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['bus_id'], ['buses.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('bus_id', name='seatmaps_bus_id_key'),
    )
    op.create_index('ix_seatmaps_bus_id', 'seatmaps', ['bus_id'], unique=False)

    op.create_table('bookings',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('trip_id', sa.String(length=64), nullable=False),
        sa.Column('holder_token', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='confirmed'),
        sa.Column('passenger_details', sa.JSON(), nullable=True),
        sa.Column('booked_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_bookings_trip_id', 'bookings', ['trip_id'], unique=False)
    op.create_index('ix_bookings_holder_token', 'bookings', ['holder_token'], unique=False)
    op.create_index('ix_bookings_status', 'bookings', ['status'], unique=False)

    op.create_table('booking_seats',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('booking_id', sa.String(length=32), nullable=False),
        sa.Column('trip_id', sa.String(length=64), nullable=False),
        sa.Column('seat_id', sa.String(length=32), nullable=False),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('trip_id', 'seat_id', name='uq_trip_seat'),
    )
    op.create_index('ix_booking_seats_booking_id', 'booking_seats', ['booking_id'], unique=False)


def downgrade():
    op.drop_index('ix_booking_seats_booking_id', table_name='booking_seats')
    op.drop_table('booking_seats')
    op.drop_index('ix_bookings_status', table_name='bookings')
    op.drop_index('ix_bookings_holder_token', table_name='bookings')
    op.drop_index('ix_bookings_trip_id', table_name='bookings')
    op.drop_table('bookings')
    op.drop_index('ix_seatmaps_bus_id', table_name='seatmaps')
    op.drop_table('seatmaps')
    op.drop_index('ix_buses_registration_number', table_name='buses')
    op.drop_table('buses')
