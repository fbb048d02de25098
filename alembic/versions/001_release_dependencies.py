"""001: releases, release_dependencies, activities

Revision ID: 001_release_dependencies
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_release_dependencies'
down_revision = None
branch_labels = None
depends_on = None


RELEASE_STATUSES = (
    'PLANNING',
    'IN_DEVELOPMENT',
    'IN_REVIEW',
    'READY_STAGING',
    'IN_STAGING',
    'STAGING_VERIFIED',
    'READY_PRODUCTION',
    'DEPLOYED',
    'CANCELLED',
    'ROLLED_BACK',
)
BLOCK_SOURCES = ('NONE', 'MANUAL', 'DEPENDENCY')
DEPENDENCY_TYPES = ('BLOCKS', 'SOFT_DEPENDENCY', 'REQUIRES_SYNC')


def upgrade() -> None:
    # 创建 releases 表
    op.create_table(
        'releases',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('team_id', sa.String(64), nullable=False, index=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('version', sa.String(64), nullable=True),
        sa.Column(
            'status',
            sa.Enum(*RELEASE_STATUSES, name='release_status'),
            nullable=False,
            index=True,
        ),
        sa.Column('status_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deployed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_blocked', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('blocked_reason', sa.Text, nullable=True),
        sa.Column(
            'block_source',
            sa.Enum(*BLOCK_SOURCES, name='block_source'),
            nullable=False,
            server_default='NONE',
        ),
        sa.Column('block_source_edge_id', sa.String(36), nullable=True),
        sa.Column('row_version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )

    # 创建复合索引
    op.create_index('ix_releases_team_status', 'releases', ['team_id', 'status'])

    # 创建 release_dependencies 表
    op.create_table(
        'release_dependencies',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'dependent_release_id',
            sa.String(36),
            sa.ForeignKey('releases.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column(
            'blocking_release_id',
            sa.String(36),
            sa.ForeignKey('releases.id', ondelete='CASCADE'),
            nullable=False,
            index=True,
        ),
        sa.Column(
            'type',
            sa.Enum(*DEPENDENCY_TYPES, name='dependency_type'),
            nullable=False,
        ),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('is_resolved', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            'dependent_release_id',
            'blocking_release_id',
            'type',
            name='uq_release_dependency_pair_type',
        ),
    )

    # 创建 activities 表
    op.create_table(
        'activities',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('team_id', sa.String(64), nullable=False, index=True),
        sa.Column('release_id', sa.String(36), nullable=True, index=True),
        sa.Column('type', sa.String(64), nullable=False, index=True),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('metadata', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, index=True),
    )


def downgrade() -> None:
    op.drop_table('activities')
    op.drop_table('release_dependencies')
    op.drop_index('ix_releases_team_status', table_name='releases')
    op.drop_table('releases')
    sa.Enum(name='dependency_type').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='block_source').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='release_status').drop(op.get_bind(), checkfirst=True)
