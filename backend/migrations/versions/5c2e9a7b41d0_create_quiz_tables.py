"""create quiz, question and answer tables

Revision ID: 5c2e9a7b41d0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e9a7b41d0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa.inspect(bind).get_table_names())

    # Databases created with `flask db-reset` already have the tables
    if 'quiz' not in existing_tables:
        op.create_table(
            'quiz',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('title', sa.String(length=200), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='draft'),
        )
    if 'question' not in existing_tables:
        op.create_table(
            'question',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('quiz_id', sa.Integer(), sa.ForeignKey('quiz.id'), nullable=False),
            sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('text', sa.Text(), nullable=False),
            sa.Column('type', sa.String(length=32), nullable=False, server_default='multiple-choice'),
            sa.Column('points', sa.Integer(), nullable=True),
        )
        op.create_index('ix_question_quiz_id', 'question', ['quiz_id'])
    if 'answer' not in existing_tables:
        op.create_table(
            'answer',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('question_id', sa.Integer(), sa.ForeignKey('question.id'), nullable=False),
            sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('text', sa.String(length=500), nullable=False),
            sa.Column('correct', sa.Boolean(), nullable=False, server_default=sa.false()),
        )
        op.create_index('ix_answer_question_id', 'answer', ['question_id'])


def downgrade():
    op.drop_index('ix_answer_question_id', table_name='answer')
    op.drop_table('answer')
    op.drop_index('ix_question_quiz_id', table_name='question')
    op.drop_table('question')
    op.drop_table('quiz')
