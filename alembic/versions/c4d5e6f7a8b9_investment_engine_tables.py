"""investment_engine_tables

Revision ID: c4d5e6f7a8b9
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c4d5e6f7a8b9'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'properties',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('total_shares', sa.Integer(), nullable=False),
        sa.Column('share_price', sa.BigInteger(), nullable=False),
        sa.Column('funding_started_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_properties_id', 'properties', ['id'])

    # Legacy ledger: kept for ownership, distributions and the unified view
    op.create_table(
        'investments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('shares', sa.Integer(), nullable=False),
        sa.Column('share_price', sa.BigInteger(), nullable=False),
        sa.Column('ownership_percentage', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(), nullable=True, server_default='pending'),
        sa.Column('distribution_frequency', sa.String(), nullable=True),
        sa.Column('investment_date', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(), nullable=True),
        sa.Column('exited_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['property_id'], ['properties.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_investments_id', 'investments', ['id'])
    op.create_index('ix_investments_user_id', 'investments', ['user_id'])
    op.create_index('ix_investments_property_id', 'investments', ['property_id'])
    op.create_index('ix_investments_status', 'investments', ['status'])
    op.create_index('ix_investments_user_status_created', 'investments', ['user_id', 'status', 'created_at'])

    op.create_table(
        'investment_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('number_of_shares', sa.Integer(), nullable=False),
        sa.Column('price_per_share', sa.BigInteger(), nullable=False),
        sa.Column('investment_amount', sa.BigInteger(), nullable=False),
        sa.Column('platform_fee', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('processing_fee', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.BigInteger(), nullable=False),
        sa.Column('ownership_percentage', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('payment_reference', sa.String(), nullable=True),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('reserved_at', sa.DateTime(), nullable=True),
        sa.Column('reservation_expires_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('certificate_issued', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('certificate_issued_at', sa.DateTime(), nullable=True),
        sa.Column('certificate_reference', sa.String(), nullable=True),
        sa.Column('distribution_frequency', sa.String(), nullable=True),
        sa.Column('exited_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint('number_of_shares > 0', name='ck_investment_transactions_positive_shares'),
        sa.ForeignKeyConstraint(['property_id'], ['properties.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_investment_transactions_id', 'investment_transactions', ['id'])
    op.create_index('ix_investment_transactions_user_id', 'investment_transactions', ['user_id'])
    op.create_index('ix_investment_transactions_property_id', 'investment_transactions', ['property_id'])
    op.create_index('ix_investment_transactions_status', 'investment_transactions', ['status'])
    op.create_index(
        'ix_investment_transactions_reservation_expires_at', 'investment_transactions', ['reservation_expires_at']
    )
    op.create_index(
        'ix_investment_transactions_property_status', 'investment_transactions', ['property_id', 'status']
    )

    op.create_table(
        'investment_eligibility',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('is_accredited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('accreditation_type', sa.String(), nullable=False, server_default='none'),
        sa.Column('annual_investment_limit', sa.BigInteger(), nullable=True),
        sa.Column('current_year_invested', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_invested', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('kyc_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('aml_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index('ix_investment_eligibility_id', 'investment_eligibility', ['id'])

    op.create_table(
        'investment_documents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('investment_id', sa.Integer(), nullable=False),
        sa.Column('document_type', sa.String(), nullable=False),
        sa.Column('document_name', sa.String(), nullable=False),
        sa.Column('document_url', sa.Text(), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('mime_type', sa.String(), nullable=True),
        sa.Column('signed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('signed_at', sa.DateTime(), nullable=True),
        sa.Column('signature_data', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(['investment_id'], ['investment_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_investment_documents_id', 'investment_documents', ['id'])
    op.create_index('ix_investment_documents_investment_id', 'investment_documents', ['investment_id'])

    # Append-only audit trail
    op.create_table(
        'investment_activity',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('investment_id', sa.Integer(), nullable=False),
        sa.Column('activity_type', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('old_status', sa.String(), nullable=True),
        sa.Column('new_status', sa.String(), nullable=True),
        sa.Column('performed_by', sa.Integer(), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['investment_id'], ['investment_transactions.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_investment_activity_id', 'investment_activity', ['id'])
    op.create_index('ix_investment_activity_investment_id', 'investment_activity', ['investment_id'])
    op.create_index('ix_investment_activity_created_at', 'investment_activity', ['created_at'])

    op.create_table(
        'income_distributions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('investment_id', sa.Integer(), nullable=True),
        sa.Column('investment_transaction_id', sa.Integer(), nullable=True),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('distribution_type', sa.String(), nullable=False),
        sa.Column('distribution_date', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            '(investment_id IS NULL) <> (investment_transaction_id IS NULL)',
            name='ck_income_distributions_single_ledger',
        ),
        sa.CheckConstraint('amount > 0', name='ck_income_distributions_positive_amount'),
        sa.ForeignKeyConstraint(['investment_id'], ['investments.id'], ),
        sa.ForeignKeyConstraint(['investment_transaction_id'], ['investment_transactions.id'], ),
        sa.ForeignKeyConstraint(['property_id'], ['properties.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_income_distributions_id', 'income_distributions', ['id'])
    op.create_index('ix_income_distributions_investment_id', 'income_distributions', ['investment_id'])
    op.create_index(
        'ix_income_distributions_investment_transaction_id', 'income_distributions', ['investment_transaction_id']
    )
    op.create_index('ix_income_distributions_property_id', 'income_distributions', ['property_id'])
    op.create_index('ix_income_distributions_user_id', 'income_distributions', ['user_id'])
    op.create_index('ix_income_distributions_status', 'income_distributions', ['status'])

    op.create_table(
        'platform_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('setting_key', sa.String(), nullable=False),
        sa.Column('setting_value', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('setting_key'),
    )
    op.create_index('ix_platform_settings_id', 'platform_settings', ['id'])


def downgrade() -> None:
    op.drop_table('platform_settings')
    op.drop_table('income_distributions')
    op.drop_table('investment_activity')
    op.drop_table('investment_documents')
    op.drop_table('investment_eligibility')
    op.drop_table('investment_transactions')
    op.drop_table('investments')
    op.drop_table('properties')
