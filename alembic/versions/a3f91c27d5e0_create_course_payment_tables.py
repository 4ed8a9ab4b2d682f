"""create_course_payment_tables

Revision ID: a3f91c27d5e0
Revises:
Create Date: 2026-10-19 09:14:02.318204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a3f91c27d5e0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


payment_gateway = postgresql.ENUM('VNPAY', 'MOMO', name='paymentgateway', create_type=False)
payment_status = postgresql.ENUM(
    'PENDING', 'PAID', 'FAILED', 'CANCELLED', 'REFUNDED', 'PARTIALLY_REFUNDED',
    name='paymentstatus', create_type=False,
)
coupon_type = postgresql.ENUM('PERCENTAGE', 'FIXED_AMOUNT', name='coupontype', create_type=False)
notification_source = postgresql.ENUM('CALLBACK', 'WEBHOOK', name='notificationsource', create_type=False)
reconciliation_outcome = postgresql.ENUM(
    'PAID', 'FAILED', 'AMOUNT_MISMATCH', 'COUPON_EXHAUSTED', 'ALREADY_PROCESSED',
    name='reconciliationoutcome', create_type=False,
)
enrollment_status = postgresql.ENUM('ACTIVE', 'REVOKED', name='enrollmentstatus', create_type=False)
refund_request_status = postgresql.ENUM(
    'PENDING', 'APPROVED', 'REJECTED', name='refundrequeststatus', create_type=False,
)

ENUMS = (
    payment_gateway, payment_status, coupon_type, notification_source,
    reconciliation_outcome, enrollment_status, refund_request_status,
)


def upgrade() -> None:
    """Course catalogue read model, orders, coupons, payments, enrollments and refunds."""
    bind = op.get_bind()
    # Shared by several tables, so created once up front
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        'courses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('is_free', sa.Boolean(), nullable=False),
        sa.Column('instructor_id', sa.String(), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('is_published', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_courses_instructor_id', 'courses', ['instructor_id'])
    op.create_index('ix_courses_category_id', 'courses', ['category_id'])

    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('type', coupon_type, nullable=False),
        sa.Column('value', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('max_discount', sa.BigInteger(), nullable=True),
        sa.Column('min_order_value', sa.BigInteger(), nullable=False),
        sa.Column('applicable_course_ids', sa.JSON(), nullable=True),
        sa.Column('applicable_category_ids', sa.JSON(), nullable=True),
        sa.Column('start_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('end_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=True),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.CheckConstraint('end_date > start_date', name='ck_coupons_date_range'),
        sa.CheckConstraint('max_uses IS NULL OR used_count <= max_uses', name='ck_coupons_usage_cap'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_coupons_code', 'coupons', ['code'], unique=True)

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_code', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=False),
        sa.Column('base_price', sa.BigInteger(), nullable=False),
        sa.Column('discount_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('final_price', sa.BigInteger(), nullable=False),
        sa.Column('refunded_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('payment_gateway', payment_gateway, nullable=False),
        sa.Column('payment_status', payment_status, nullable=False),
        sa.Column('coupon_id', sa.Integer(), nullable=True),
        sa.Column('payment_url', sa.String(), nullable=True),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.String(length=64), nullable=True),
        sa.Column('needs_manual_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint('final_price >= 0', name='ck_orders_final_price_non_negative'),
        sa.CheckConstraint('discount_amount >= 0', name='ck_orders_discount_non_negative'),
        sa.ForeignKeyConstraint(['course_id'], ['courses.id']),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_order_code', 'orders', ['order_code'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_course_id', 'orders', ['course_id'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])
    op.create_index('ix_orders_user_course_status', 'orders', ['user_id', 'course_id', 'payment_status'])

    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('coupon_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('discount_applied', sa.BigInteger(), nullable=False),
        sa.Column('used_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id'),
    )
    op.create_index('ix_coupon_usages_coupon_id', 'coupon_usages', ['coupon_id'])
    op.create_index('ix_coupon_usages_user_id', 'coupon_usages', ['user_id'])

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('gateway', payment_gateway, nullable=False),
        sa.Column('gateway_transaction_id', sa.String(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('result_code', sa.String(length=16), nullable=False),
        sa.Column('raw_payload_hash', sa.String(length=64), nullable=False),
        sa.Column('source', notification_source, nullable=False),
        sa.Column('outcome', reconciliation_outcome, nullable=False),
        sa.Column('received_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway', 'gateway_transaction_id', name='uq_payment_transactions_gateway_txn'),
    )
    op.create_index('ix_payment_transactions_order_id', 'payment_transactions', ['order_id'])

    op.create_table(
        'enrollments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('course_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('status', enrollment_status, nullable=False),
        sa.Column('progress_percentage', sa.Numeric(precision=5, scale=2), nullable=False, server_default='0'),
        sa.Column('enrolled_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('revoked_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['course_id'], ['courses.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'course_id', name='uq_enrollments_user_course'),
    )
    op.create_index('ix_enrollments_user_id', 'enrollments', ['user_id'])
    op.create_index('ix_enrollments_course_id', 'enrollments', ['course_id'])

    op.create_table(
        'refund_requests',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('student_id', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', refund_request_status, nullable=False),
        sa.Column('progress_percentage_at_request', sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column('suggested_amount', sa.BigInteger(), nullable=False),
        sa.Column('approved_amount', sa.BigInteger(), nullable=True),
        sa.Column('processed_by', sa.String(), nullable=True),
        sa.Column('processed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('needs_retry', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refund_requests_order_id', 'refund_requests', ['order_id'])
    op.create_index('ix_refund_requests_student_id', 'refund_requests', ['student_id'])
    op.create_index('ix_refund_requests_status', 'refund_requests', ['status'])
    # At most one open request per order
    op.create_index(
        'uq_refund_requests_open_per_order',
        'refund_requests',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        'refund_transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('refund_request_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('gateway', payment_gateway, nullable=False),
        sa.Column('provider_refund_id', sa.String(), nullable=True),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('refund_metadata', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['refund_request_id'], ['refund_requests.id']),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refund_transactions_refund_request_id', 'refund_transactions', ['refund_request_id'])
    op.create_index('ix_refund_transactions_order_id', 'refund_transactions', ['order_id'])
    op.create_index('ix_refund_transactions_provider_refund_id', 'refund_transactions', ['provider_refund_id'])


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_table('refund_transactions')
    op.drop_index('uq_refund_requests_open_per_order', table_name='refund_requests')
    op.drop_table('refund_requests')
    op.drop_table('enrollments')
    op.drop_table('payment_transactions')
    op.drop_table('coupon_usages')
    op.drop_table('orders')
    op.drop_table('coupons')
    op.drop_table('courses')

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
