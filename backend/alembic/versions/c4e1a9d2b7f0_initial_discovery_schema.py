"""Initial discovery schema: experiences, attribute schema, similarity cache, turn log

Revision ID: c4e1a9d2b7f0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel
from alembic import op

# revision identifiers, used by Alembic.
revision: str = 'c4e1a9d2b7f0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all discovery tables."""
    op.create_table(
        'experience',
        sa.Column('id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('user_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('category', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('title', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=''),
        sa.Column('narrative', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=''),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('location_text', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=''),
        sa.Column('occurred_on', sa.Date(), nullable=True),
        sa.Column('time_of_day', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        sa.Column('attributes', sa.JSON(), nullable=True),
        sa.Column('locale', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default='en'),
        sa.Column('visibility', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default='public'),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('search_text', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=''),
        sa.Column('embedded_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_experience_user_id'), 'experience', ['user_id'], unique=False)
    op.create_index(op.f('ix_experience_category'), 'experience', ['category'], unique=False)
    op.create_index(op.f('ix_experience_visibility'), 'experience', ['visibility'], unique=False)

    op.create_table(
        'attribute_schema',
        sa.Column('key', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('label', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=''),
        sa.Column('data_type', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default='enum'),
        sa.Column('allowed_values', sa.JSON(), nullable=True),
        sa.Column('is_filterable', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('category', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.PrimaryKeyConstraint('key'),
    )

    op.create_table(
        'user_similarity_cache',
        sa.Column('user_a', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('user_b', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('score', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('jaccard', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('cosine', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('shared_categories', sa.JSON(), nullable=True),
        sa.Column('shared_category_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('same_location', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_a', 'user_b'),
    )

    op.create_table(
        'conversation',
        sa.Column('id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('user_id', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('title', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('total_cost', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('turn_count', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_conversation_user_id'), 'conversation', ['user_id'], unique=False)

    op.create_table(
        'conversation_turn',
        sa.Column('id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('conversation_id', sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column('turn_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('message', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default=''),
        sa.Column('state', sqlmodel.sql.sqltypes.AutoString(), nullable=False, server_default='DELIVERED'),
        sa.Column('plan', sa.JSON(), nullable=True),
        sa.Column('tool_outcomes', sa.JSON(), nullable=True),
        sa.Column('answer', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('citations', sa.JSON(), nullable=True),
        sa.Column('ungrounded_citations', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column('cost', sa.Float(), nullable=False, server_default='0.0'),
        sa.Column('duration_ms', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        op.f('ix_conversation_turn_conversation_id'),
        'conversation_turn',
        ['conversation_id'],
        unique=False,
    )


def downgrade() -> None:
    """Drop all discovery tables."""
    op.drop_index(op.f('ix_conversation_turn_conversation_id'), table_name='conversation_turn')
    op.drop_table('conversation_turn')
    op.drop_index(op.f('ix_conversation_user_id'), table_name='conversation')
    op.drop_table('conversation')
    op.drop_table('user_similarity_cache')
    op.drop_table('attribute_schema')
    op.drop_index(op.f('ix_experience_visibility'), table_name='experience')
    op.drop_index(op.f('ix_experience_category'), table_name='experience')
    op.drop_index(op.f('ix_experience_user_id'), table_name='experience')
    op.drop_table('experience')
