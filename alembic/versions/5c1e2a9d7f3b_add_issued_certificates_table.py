"""add_issued_certificates_table

Revision ID: 5c1e2a9d7f3b
Revises:
Create Date: 2026-10-16 09:12:41.503218

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1e2a9d7f3b'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'issued_certificates',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('dni', sa.String(length=20), nullable=True),
        sa.Column('unique_code', sa.String(length=100), nullable=True),
        sa.Column('student_id', sa.BigInteger(), nullable=False),
        sa.Column('full_name', sa.String(length=100), nullable=False),
        sa.Column('course_id', sa.BigInteger(), nullable=False),
        sa.Column('course_name', sa.String(length=255), nullable=False),
        sa.Column('grade', sa.Float(), nullable=True),
        sa.Column('issued_date', sa.Date(), nullable=True),
        sa.Column('issuer_name', sa.String(length=100), nullable=True),
        sa.Column('drive_link', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('unique_code'),
    )
    op.create_index(op.f('ix_issued_certificates_status'), 'issued_certificates', ['status'], unique=False)
    op.create_index('ix_issued_certificates_student_course', 'issued_certificates', ['student_id', 'course_id'], unique=False)
    op.create_index(
        'uq_issued_certificates_active_student_course',
        'issued_certificates',
        ['student_id', 'course_id'],
        unique=True,
        postgresql_where=sa.text("status != 'error'"),
        sqlite_where=sa.text("status != 'error'"),
    )


def downgrade() -> None:
    op.drop_index('uq_issued_certificates_active_student_course', table_name='issued_certificates')
    op.drop_index('ix_issued_certificates_student_course', table_name='issued_certificates')
    op.drop_index(op.f('ix_issued_certificates_status'), table_name='issued_certificates')
    op.drop_table('issued_certificates')
