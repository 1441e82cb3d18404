"""initial schema: users, projects, tasks, subtasks, subtask images

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.create_table('users',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('username', sa.String(length=120), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    op.create_table('projects',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('name', sa.String(length=300), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_projects_user_id', 'projects', ['user_id'])

    op.create_table('tasks',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('project_id', sa.String(length=64), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('title', sa.String(length=300), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='todo'),
        sa.Column('priority', sa.String(length=10), nullable=False, server_default='medium'),
        sa.Column('due_date', sa.DateTime()),
        sa.Column('order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_tasks_project_id', 'tasks', ['project_id'])

    op.create_table('subtasks',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('task_id', sa.String(length=64), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('title', sa.String(length=300), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('is_completed', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_subtasks_task_id', 'subtasks', ['task_id'])

    op.create_table('subtask_images',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('subtask_id', sa.String(length=64), sa.ForeignKey('subtasks.id'), nullable=False),
        sa.Column('filename', sa.String(length=400), nullable=False),
        sa.Column('base64_data', sa.Text(), nullable=False),
        sa.Column('mime_type', sa.String(length=50), nullable=False),
        sa.Column('order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime()),
    )
    op.create_index('ix_subtask_images_subtask_id', 'subtask_images', ['subtask_id'])

def downgrade() -> None:
    op.drop_index('ix_subtask_images_subtask_id', table_name='subtask_images')
    op.drop_table('subtask_images')
    op.drop_index('ix_subtasks_task_id', table_name='subtasks')
    op.drop_table('subtasks')
    op.drop_index('ix_tasks_project_id', table_name='tasks')
    op.drop_table('tasks')
    op.drop_index('ix_projects_user_id', table_name='projects')
    op.drop_table('projects')
    op.drop_index('ix_users_username', table_name='users')
    op.drop_table('users')
