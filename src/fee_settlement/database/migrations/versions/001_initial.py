"""Initial migration - create students, fees, transactions and transaction_history tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'students',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('roll_number', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('class_name', sa.String(50), nullable=True),
        sa.Column('section', sa.String(10), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'fees',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('student_id', sa.String(36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('academic_year', sa.String(20), nullable=False),
        sa.Column('components_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('paid_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('due_amount', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('student_id', 'academic_year', name='uq_fees_student_year'),
    )
    op.create_index('ix_fees_student_id', 'fees', ['student_id'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(64), nullable=False),
        sa.Column('student_id', sa.String(36), sa.ForeignKey('students.id'), nullable=False),
        sa.Column('fee_id', sa.String(36), sa.ForeignKey('fees.id'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('payment_session_id', sa.String(255), nullable=True),
        sa.Column('gateway_reference', sa.String(255), nullable=True),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('payment_method', sa.String(100), nullable=True),
        sa.Column('receipt_generated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('receipt_path', sa.String(512), nullable=True),
        sa.Column('notification_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transactions_order_id', 'transactions', ['order_id'], unique=True)
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_fee_id_status', 'transactions', ['fee_id', 'status'])
    op.create_index('ix_transactions_student_id', 'transactions', ['student_id'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])

    op.create_table(
        'transaction_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('transactions.id'), nullable=False),
        sa.Column('previous_status', sa.String(20), nullable=True),
        sa.Column('new_status', sa.String(20), nullable=False),
        sa.Column('trigger', sa.String(20), nullable=False),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transaction_history_transaction_id', 'transaction_history', ['transaction_id'])


def downgrade() -> None:
    op.drop_index('ix_transaction_history_transaction_id', table_name='transaction_history')

    op.drop_index('ix_transactions_created_at', table_name='transactions')
    op.drop_index('ix_transactions_student_id', table_name='transactions')
    op.drop_index('ix_transactions_fee_id_status', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_order_id', table_name='transactions')

    op.drop_index('ix_fees_student_id', table_name='fees')

    op.drop_table('transaction_history')
    op.drop_table('transactions')
    op.drop_table('fees')
    op.drop_table('students')
