"""Create media and downloads tables

Revision ID: downloads_001
Revises: entitlement_001
Create Date: 2026-09-28 10:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'downloads_001'
down_revision = 'entitlement_001'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('media',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('file_path', sa.String(), nullable=False),
        sa.Column('content_type', sa.String(), nullable=False, server_default='video/mp4'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_media_id'), 'media', ['id'], unique=False)

    op.create_table('downloads',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=False),
        sa.Column('media_id', sa.String(), nullable=False),
        sa.Column('storage_path', sa.String(), nullable=False),
        sa.Column('original_title', sa.String(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('is_expired', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(['media_id'], ['media.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_downloads_id'), 'downloads', ['id'], unique=False)
    op.create_index(op.f('ix_downloads_user_id'), 'downloads', ['user_id'], unique=False)
    op.create_index(op.f('ix_downloads_media_id'), 'downloads', ['media_id'], unique=False)
    op.create_index(op.f('ix_downloads_created_at'), 'downloads', ['created_at'], unique=False)
    op.create_index(op.f('ix_downloads_expires_at'), 'downloads', ['expires_at'], unique=False)
    op.create_index(op.f('ix_downloads_is_expired'), 'downloads', ['is_expired'], unique=False)
    op.create_index(
        'uq_downloads_user_media_live', 'downloads', ['user_id', 'media_id'], unique=True,
        postgresql_where=sa.text('is_expired = false'),
        sqlite_where=sa.text('is_expired = 0'),
    )


def downgrade():
    op.drop_index('uq_downloads_user_media_live', table_name='downloads')
    op.drop_table('downloads')
    op.drop_table('media')
