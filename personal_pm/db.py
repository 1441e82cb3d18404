import uuid
from datetime import datetime, UTC
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy.orm import deferred
from werkzeug.security import generate_password_hash

# SQLAlchemy instance
db = SQLAlchemy()

PROJECT_STATUSES = ('draft', 'active', 'completed')
TASK_STATUSES = ('todo', 'in_progress', 'done')
TASK_PRIORITIES = ('low', 'medium', 'high')
DEFAULT_PROJECT_COLOR = '#3b82f6'


def _new_id():
    return uuid.uuid4().hex


def _now():
    return datetime.now(UTC)


class UserDB(db.Model, UserMixin):
    __tablename__ = 'users'
    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    username = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=_now)
    projects = db.relationship('ProjectDB', backref='owner', lazy=True, cascade='all, delete-orphan')
    notifications = db.relationship('NotificationDB', backref='user', lazy=True, cascade='all, delete-orphan')

    def to_dict(self):
        return {'id': self.id, 'username': self.username, 'is_admin': self.is_admin}


class ProjectDB(db.Model):
    __tablename__ = 'projects'
    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    user_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), default='active', nullable=False)
    color = db.Column(db.String(20), default=DEFAULT_PROJECT_COLOR, nullable=False)
    created_at = db.Column(db.DateTime, default=_now)
    updated_at = db.Column(db.DateTime, default=_now, onupdate=_now)
    tasks = db.relationship('TaskDB', backref='project', lazy=True,
                            cascade='all, delete-orphan', order_by='TaskDB.order')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'color': self.color,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }


class TaskDB(db.Model):
    __tablename__ = 'tasks'
    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    project_id = db.Column(db.String(64), db.ForeignKey('projects.id'), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), default='todo', nullable=False)
    priority = db.Column(db.String(10), default='medium', nullable=False)
    due_date = db.Column(db.DateTime, nullable=True)
    order = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=_now)
    updated_at = db.Column(db.DateTime, default=_now, onupdate=_now)
    subtasks = db.relationship('SubTaskDB', backref='task', lazy=True,
                               cascade='all, delete-orphan', order_by='SubTaskDB.order')

    def to_dict(self):
        return {
            'id': self.id,
            'projectId': self.project_id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'priority': self.priority,
            'dueDate': self.due_date.isoformat() if self.due_date else None,
            'order': self.order,
        }


class SubTaskDB(db.Model):
    __tablename__ = 'subtasks'
    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    task_id = db.Column(db.String(64), db.ForeignKey('tasks.id'), nullable=False, index=True)
    title = db.Column(db.String(300), nullable=False)
    # Rich text (HTML) with data-image-id markers
    description = db.Column(db.Text)
    is_completed = db.Column(db.Boolean, default=False, nullable=False)
    order = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=_now)
    updated_at = db.Column(db.DateTime, default=_now, onupdate=_now)
    images = db.relationship('SubTaskImageDB', backref='subtask', lazy=True,
                             cascade='all, delete-orphan', order_by='SubTaskImageDB.order')

    def to_dict(self, description=None):
        return {
            'id': self.id,
            'taskId': self.task_id,
            'title': self.title,
            'description': self.description if description is None else description,
            'isCompleted': self.is_completed,
            'order': self.order,
        }


class SubTaskImageDB(db.Model):
    __tablename__ = 'subtask_images'
    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    subtask_id = db.Column(db.String(64), db.ForeignKey('subtasks.id'), nullable=False, index=True)
    filename = db.Column(db.String(400), nullable=False)
    # Deferred so metadata queries skip the payload column
    base64_data = deferred(db.Column(db.Text, nullable=False))
    mime_type = db.Column(db.String(50), nullable=False)
    order = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=_now)

    def to_dict(self):
        return {
            'id': self.id,
            'filename': self.filename,
            'mimeType': self.mime_type,
            'order': self.order,
        }



class NotificationDB(db.Model):
    __tablename__ = 'notifications'
    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    user_id = db.Column(db.String(64), db.ForeignKey('users.id'), nullable=False, index=True)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, nullable=False)
    # Plain references; notifications outlive the task or project they mention
    task_id = db.Column(db.String(64), nullable=True)
    project_id = db.Column(db.String(64), nullable=True)
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=_now)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'taskId': self.task_id,
            'projectId': self.project_id,
            'isRead': self.is_read,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }

# Utility seed for first admin user if none exists

def ensure_admin_user(db_session, username='admin', password='ChangeMe123!'):
    if not UserDB.query.filter_by(is_admin=True).first():
        u = UserDB(id='admin-seed', username=username, password_hash=generate_password_hash(password), is_admin=True)
        db_session.add(u)
        db_session.commit()
        return u
    return None
