"""initial

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SERVICE_INVOICE_WHERE = "invoice_type = 'service_usage' AND deleted_at IS NULL"


def _timestamps(updated: bool = True, deleted: bool = False):
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False))
    if deleted:
        cols.append(sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True))
    return cols


def upgrade() -> None:
    # Users
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('tg_id', sa.BigInteger(), nullable=True),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )
    op.create_index(op.f('ix_users_tg_id'), 'users', ['tg_id'], unique=True)

    # Houses
    op.create_table('houses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('address', sa.String(), nullable=True),
        sa.Column('manager_id', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        *_timestamps(deleted=True),
        sa.ForeignKeyConstraint(['manager_id'], ['users.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_houses_manager_id'), 'houses', ['manager_id'], unique=False)

    # Rooms
    op.create_table('rooms',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('house_id', sa.Integer(), nullable=False),
        sa.Column('room_number', sa.String(), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('base_price', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        *_timestamps(deleted=True),
        sa.ForeignKeyConstraint(['house_id'], ['houses.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_rooms_house_id'), 'rooms', ['house_id'], unique=False)

    # Services
    op.create_table('services',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('default_price', sa.Integer(), nullable=False),
        sa.Column('unit', sa.String(), nullable=True),
        sa.Column('is_metered', sa.Boolean(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name')
    )

    # Room Services
    op.create_table('room_services',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('room_id', sa.Integer(), nullable=False),
        sa.Column('service_id', sa.Integer(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=True),
        sa.Column('is_fixed', sa.Boolean(), nullable=False),
        sa.Column('effective_date', sa.Date(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(deleted=True),
        sa.ForeignKeyConstraint(['room_id'], ['rooms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_room_services_room_id'), 'room_services', ['room_id'], unique=False)

    # Service Usage
    op.create_table('service_usage',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('room_service_id', sa.Integer(), nullable=False),
        sa.Column('start_meter', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('end_meter', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('usage_value', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('price_used', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['room_service_id'], ['room_services.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('room_service_id', 'month', 'year', name='uq_service_usage_period')
    )
    op.create_index(op.f('ix_service_usage_room_service_id'), 'service_usage', ['room_service_id'], unique=False)

    # Contracts
    op.create_table('contracts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('room_id', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.DATE(), nullable=False),
        sa.Column('end_date', sa.DATE(), nullable=False),
        sa.Column('monthly_price', sa.Integer(), nullable=False),
        sa.Column('deposit_amount', sa.Integer(), nullable=False),
        sa.Column('notice_period', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('deposit_status', sa.String(), nullable=False, server_default='held'),
        sa.Column('termination_reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('time_renew', sa.Integer(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        *_timestamps(deleted=True),
        sa.ForeignKeyConstraint(['room_id'], ['rooms.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_contracts_room_id'), 'contracts', ['room_id'], unique=False)
    op.create_index(op.f('ix_contracts_status'), 'contracts', ['status'], unique=False)

    # Contract Users
    op.create_table('contract_users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('contract_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['contract_id'], ['contracts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('contract_id', 'user_id', name='uq_contract_user')
    )
    op.create_index(op.f('ix_contract_users_user_id'), 'contract_users', ['user_id'], unique=False)

    # Payment Methods
    op.create_table('payment_methods',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Invoices
    op.create_table('invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('room_id', sa.Integer(), nullable=False),
        sa.Column('invoice_type', sa.String(), nullable=False),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('payment_method_id', sa.Integer(), nullable=True),
        sa.Column('transaction_code', sa.String(), nullable=True),
        sa.Column('payment_status', sa.String(), nullable=False),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        *_timestamps(deleted=True),
        sa.ForeignKeyConstraint(['room_id'], ['rooms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_invoices_room_id'), 'invoices', ['room_id'], unique=False)
    op.create_index(op.f('ix_invoices_transaction_code'), 'invoices', ['transaction_code'], unique=False)
    op.create_index(
        'uq_invoice_service_period', 'invoices', ['room_id', 'month', 'year'], unique=True,
        postgresql_where=sa.text(SERVICE_INVOICE_WHERE),
        sqlite_where=sa.text(SERVICE_INVOICE_WHERE),
    )

    # Invoice Items
    op.create_table('invoice_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(), nullable=False),
        sa.Column('service_usage_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_usage_id'], ['service_usage.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_invoice_items_invoice_id'), 'invoice_items', ['invoice_id'], unique=False)
    op.create_index(op.f('ix_invoice_items_service_usage_id'), 'invoice_items', ['service_usage_id'], unique=False)

    # Notifications
    op.create_table('notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        *_timestamps(deleted=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_notifications_user_id'), 'notifications', ['user_id'], unique=False)


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_table('invoice_items')
    op.drop_index('uq_invoice_service_period', table_name='invoices')
    op.drop_table('invoices')
    op.drop_table('payment_methods')
    op.drop_table('contract_users')
    op.drop_table('contracts')
    op.drop_table('service_usage')
    op.drop_table('room_services')
    op.drop_table('services')
    op.drop_table('rooms')
    op.drop_table('houses')
    op.drop_index(op.f('ix_users_tg_id'), table_name='users')
    op.drop_table('users')
