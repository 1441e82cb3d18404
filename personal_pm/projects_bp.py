import logging
import re
from datetime import datetime, timedelta, UTC
from flask import Blueprint, request, jsonify, abort
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError
from .db import db, ProjectDB, TaskDB, PROJECT_STATUSES, TASK_STATUSES, TASK_PRIORITIES, DEFAULT_PROJECT_COLOR
from .image_engine import image_ids_for_projects, image_ids_for_tasks, forget_images

projects_bp = Blueprint('projects', __name__, url_prefix='/api')
logger = logging.getLogger(__name__)

COLOR_RE = re.compile(r'^#[0-9a-fA-F]{6}$')
RECENT_PROJECTS_LIMIT = 5


def owned_project(project_id):
    p = ProjectDB.query.filter_by(id=project_id, user_id=current_user.get_id()).first()
    if not p:
        abort(404, description='Project not found')
    return p


def owned_task(task_id):
    t = (TaskDB.query.join(ProjectDB, TaskDB.project_id == ProjectDB.id)
         .filter(TaskDB.id == task_id, ProjectDB.user_id == current_user.get_id()).first())
    if not t:
        abort(404, description='Task not found')
    return t


@projects_bp.app_errorhandler(404)
def not_found(e):
    return jsonify({'error': getattr(e, 'description', 'Not found')}), 404


def _utc_naive(value):
    # Stored datetimes are naive UTC
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


def _utc_now():
    return datetime.now(UTC).replace(tzinfo=None)


def _day_bounds(now):
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def _parse_due_date(value):
    if not value:
        return None
    try:
        return _utc_naive(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
    except ValueError:
        return False


def _commit_or_500(message):
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(message)
        return jsonify({'error': message}), 500
    return None


# --- Projects ---

@projects_bp.route('/projects', methods=['GET'])
@login_required
def list_projects():
    projects = ProjectDB.query.filter_by(user_id=current_user.get_id()).order_by(ProjectDB.created_at.desc()).all()
    return jsonify({'projects': [p.to_dict() for p in projects]})


@projects_bp.route('/projects', methods=['POST'])
@login_required
def create_project():
    data = request.get_json(force=True, silent=True) or {}
    name = (data.get('name') or '').strip()
    if not name:
        return jsonify({'error': 'Project name is required'}), 400
    status = data.get('status') or 'active'
    if status not in PROJECT_STATUSES:
        return jsonify({'error': 'Invalid status'}), 400
    color = data.get('color') or DEFAULT_PROJECT_COLOR
    if not COLOR_RE.match(str(color)):
        return jsonify({'error': 'Invalid color'}), 400
    p = ProjectDB(user_id=current_user.get_id(), name=name,
                  description=(data.get('description') or '').strip() or None, status=status, color=color)
    db.session.add(p)
    failed = _commit_or_500('Failed to create project')
    if failed:
        return failed
    return jsonify({'project': p.to_dict()}), 201


@projects_bp.route('/projects/<project_id>', methods=['GET'])
@login_required
def get_project(project_id):
    p = owned_project(project_id)
    out = p.to_dict()
    out['tasks'] = [t.to_dict() for t in p.tasks]
    return jsonify({'project': out})


@projects_bp.route('/projects/<project_id>', methods=['PUT'])
@login_required
def update_project(project_id):
    p = owned_project(project_id)
    data = request.get_json(force=True, silent=True) or {}
    if 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            return jsonify({'error': 'Project name is required'}), 400
        p.name = name
    if 'description' in data:
        p.description = (data.get('description') or '').strip() or None
    if 'status' in data:
        if data['status'] not in PROJECT_STATUSES:
            return jsonify({'error': 'Invalid status'}), 400
        p.status = data['status']
    if 'color' in data:
        if not COLOR_RE.match(str(data['color'] or '')):
            return jsonify({'error': 'Invalid color'}), 400
        p.color = data['color']
    failed = _commit_or_500('Failed to update project')
    if failed:
        return failed
    return jsonify({'project': p.to_dict()})


@projects_bp.route('/projects/<project_id>', methods=['DELETE'])
@login_required
def delete_project(project_id):
    p = owned_project(project_id)
    # Cascade removes image rows; cache entries have to be cleared by hand
    image_ids = image_ids_for_projects([p.id])
    db.session.delete(p)
    failed = _commit_or_500('Failed to delete project')
    if failed:
        return failed
    forget_images(image_ids)
    return jsonify({'message': 'Project deleted successfully'})


# --- Tasks ---

@projects_bp.route('/projects/<project_id>/tasks', methods=['GET'])
@login_required
def list_tasks(project_id):
    p = owned_project(project_id)
    return jsonify({'tasks': [t.to_dict() for t in p.tasks]})


@projects_bp.route('/projects/<project_id>/tasks', methods=['POST'])
@login_required
def create_task(project_id):
    p = owned_project(project_id)
    data = request.get_json(force=True, silent=True) or {}
    title = (data.get('title') or '').strip()
    if not title:
        return jsonify({'error': 'Task title is required'}), 400
    status = data.get('status') or 'todo'
    priority = data.get('priority') or 'medium'
    if status not in TASK_STATUSES or priority not in TASK_PRIORITIES:
        return jsonify({'error': 'Invalid status or priority'}), 400
    due_date = _parse_due_date(data.get('dueDate'))
    if due_date is False:
        return jsonify({'error': 'Invalid due date'}), 400
    last = TaskDB.query.filter_by(project_id=p.id).order_by(TaskDB.order.desc()).first()
    t = TaskDB(project_id=p.id, title=title, description=(data.get('description') or '').strip() or None,
               status=status, priority=priority, due_date=due_date, order=(last.order if last else 0) + 1)
    db.session.add(t)
    failed = _commit_or_500('Failed to create task')
    if failed:
        return failed
    return jsonify({'task': t.to_dict()}), 201


@projects_bp.route('/tasks/<task_id>', methods=['PUT', 'PATCH'])
@login_required
def update_task(task_id):
    t = owned_task(task_id)
    data = request.get_json(force=True, silent=True) or {}
    if 'title' in data:
        title = (data.get('title') or '').strip()
        if not title:
            return jsonify({'error': 'Task title is required'}), 400
        t.title = title
    if 'description' in data:
        t.description = (data.get('description') or '').strip() or None
    if 'status' in data:
        if data['status'] not in TASK_STATUSES:
            return jsonify({'error': 'Invalid status'}), 400
        t.status = data['status']
    if 'priority' in data:
        if data['priority'] not in TASK_PRIORITIES:
            return jsonify({'error': 'Invalid priority'}), 400
        t.priority = data['priority']
    if 'dueDate' in data:
        due_date = _parse_due_date(data.get('dueDate'))
        if due_date is False:
            return jsonify({'error': 'Invalid due date'}), 400
        t.due_date = due_date
    if 'order' in data:
        try:
            t.order = int(data['order'])
        except (TypeError, ValueError):
            return jsonify({'error': 'Invalid order'}), 400
    failed = _commit_or_500('Failed to update task')
    if failed:
        return failed
    return jsonify({'task': t.to_dict()})


@projects_bp.route('/tasks/<task_id>', methods=['DELETE'])
@login_required
def delete_task(task_id):
    t = owned_task(task_id)
    image_ids = image_ids_for_tasks([t.id])
    db.session.delete(t)
    failed = _commit_or_500('Failed to delete task')
    if failed:
        return failed
    forget_images(image_ids)
    return jsonify({'message': 'Task deleted successfully'})


# --- Overview ---

def _user_tasks():
    return TaskDB.query.join(ProjectDB, TaskDB.project_id == ProjectDB.id).filter(
        ProjectDB.user_id == current_user.get_id())


@projects_bp.route('/tasks/today', methods=['GET'])
@login_required
def tasks_due_today():
    """Tasks across all of the user's projects that are due today (UTC)."""
    start, end = _day_bounds(_utc_now())
    tasks = _user_tasks().filter(TaskDB.due_date >= start, TaskDB.due_date < end).order_by(TaskDB.order.asc()).all()
    out = []
    for t in tasks:
        item = t.to_dict()
        item['project'] = {'id': t.project.id, 'name': t.project.name, 'color': t.project.color}
        out.append(item)
    return jsonify({'tasks': out})


@projects_bp.route('/dashboard/stats', methods=['GET'])
@login_required
def dashboard_stats():
    user_id = current_user.get_id()
    now = _utc_now()
    today_start, today_end = _day_bounds(now)
    week_ago = now - timedelta(days=7)

    tasks = _user_tasks().all()
    by_status = dict.fromkeys(TASK_STATUSES, 0)
    overdue = due_today = 0
    completion_by_date = {}
    for t in tasks:
        by_status[t.status] = by_status.get(t.status, 0) + 1
        if t.status == 'done':
            if t.updated_at and _utc_naive(t.updated_at) >= week_ago:
                day = t.updated_at.date().isoformat()
                completion_by_date[day] = completion_by_date.get(day, 0) + 1
        elif t.due_date:
            due = _utc_naive(t.due_date)
            if due < now:
                overdue += 1
            if today_start <= due < today_end:
                due_today += 1
    total = len(tasks)
    done = by_status.get('done', 0)

    recent = (ProjectDB.query.filter_by(user_id=user_id)
              .order_by(ProjectDB.updated_at.desc()).limit(RECENT_PROJECTS_LIMIT).all())
    return jsonify({
        'stats': {
            'totalProjects': ProjectDB.query.filter_by(user_id=user_id).count(),
            'activeProjects': ProjectDB.query.filter_by(user_id=user_id, status='active').count(),
            'totalTasks': total,
            'completedTasks': done,
            'inProgressTasks': by_status.get('in_progress', 0),
            'todoTasks': by_status.get('todo', 0),
            'overdueTasks': overdue,
            'tasksDueToday': due_today,
            'productivity': int(done * 100 / total + 0.5) if total else 0,
        },
        'charts': {
            'tasksByStatus': by_status,
            'completionByDate': completion_by_date,
        },
        'recentProjects': [{
            'id': p.id,
            'name': p.name,
            'color': p.color,
            'status': p.status,
            'totalTasks': len(p.tasks),
            'completedTasks': sum(1 for t in p.tasks if t.status == 'done'),
        } for p in recent],
    })
