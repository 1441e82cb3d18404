import logging
from flask import Blueprint, request, jsonify, abort, current_app
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError
from .db import db, ProjectDB, TaskDB, SubTaskDB
from .projects_bp import owned_task
from .image_engine import (
    ImageValidationError, RecordPersistenceError, validate_embedded_images, extract_and_register,
    register_images, resolve_for_display, delete_images, forget_images, next_image_order,
    image_ids_for_subtasks,
)

subtasks_bp = Blueprint('subtasks', __name__, url_prefix='/api')
logger = logging.getLogger(__name__)


def owned_subtask(subtask_id):
    s = (SubTaskDB.query.join(TaskDB, SubTaskDB.task_id == TaskDB.id)
         .join(ProjectDB, TaskDB.project_id == ProjectDB.id)
         .filter(SubTaskDB.id == subtask_id, ProjectDB.user_id == current_user.get_id()).first())
    if not s:
        abort(404, description='Subtask not found')
    return s


def subtask_view(s):
    """Subtask JSON with the description ready for rendering."""
    images = list(s.images)
    out = s.to_dict(description=resolve_for_display(s.description, images))
    out['images'] = [i.to_dict() for i in images]
    return out


def _clean_description(value):
    return (value or '').strip() or None


def _persist_description(s, description, start_order=0):
    """Extract embedded images into rows and store the rewritten HTML on ``s`` (uncommitted)."""
    if not description:
        s.description = None
        return []
    result = extract_and_register(
        description, s.id, start_order=start_order,
        strip_payload=current_app.config.get('IMAGE_STRIP_EMBEDDED_PAYLOAD', False),
    )
    s.description = result.rewritten_html
    return result.created_images


@subtasks_bp.route('/tasks/<task_id>/subtasks', methods=['GET'])
@login_required
def list_subtasks(task_id):
    t = owned_task(task_id)
    subtasks = SubTaskDB.query.filter_by(task_id=t.id).order_by(SubTaskDB.order.asc()).all()
    return jsonify({'subTasks': [subtask_view(s) for s in subtasks]})


@subtasks_bp.route('/tasks/<task_id>/subtasks', methods=['POST'])
@login_required
def create_subtask(task_id):
    t = owned_task(task_id)
    data = request.get_json(force=True, silent=True) or {}
    title = (data.get('title') or '').strip()
    if not title:
        return jsonify({'error': 'Subtask title is required'}), 400
    description = _clean_description(data.get('description'))
    try:
        validate_embedded_images(description)
    except ImageValidationError as e:
        return jsonify({'error': str(e)}), 400

    last = SubTaskDB.query.filter_by(task_id=t.id).order_by(SubTaskDB.order.desc()).first()
    s = SubTaskDB(task_id=t.id, title=title, order=(last.order if last else 0) + 1)
    try:
        db.session.add(s)
        db.session.flush()
        created = _persist_description(s, description)
        db.session.commit()
    except (RecordPersistenceError, SQLAlchemyError):
        db.session.rollback()
        logger.exception('Error creating subtask')
        return jsonify({'error': 'Failed to create subtask'}), 500
    # Only committed rows are cached
    register_images(created)
    return jsonify({'subTask': subtask_view(s)}), 201


@subtasks_bp.route('/subtasks/<subtask_id>', methods=['GET'])
@login_required
def get_subtask(subtask_id):
    return jsonify({'subTask': subtask_view(owned_subtask(subtask_id))})


@subtasks_bp.route('/subtasks/<subtask_id>', methods=['PUT'])
@login_required
def update_subtask(subtask_id):
    s = owned_subtask(subtask_id)
    data = request.get_json(force=True, silent=True) or {}
    title = (data.get('title') or '').strip()
    if not title:
        return jsonify({'error': 'Subtask title is required'}), 400
    description = _clean_description(data.get('description'))
    deleted_ids = data.get('deletedImageIds') or []
    if not isinstance(deleted_ids, list):
        return jsonify({'error': 'deletedImageIds must be a list'}), 400
    try:
        validate_embedded_images(description)
    except ImageValidationError as e:
        return jsonify({'error': str(e)}), 400

    try:
        start_order = next_image_order(s.id)
        removed = delete_images(deleted_ids, subtask_id=s.id)
        s.title = title
        created = _persist_description(s, description, start_order=start_order)
        db.session.commit()
    except (RecordPersistenceError, SQLAlchemyError):
        db.session.rollback()
        logger.exception('Error updating subtask %s', subtask_id)
        return jsonify({'error': 'Failed to update subtask'}), 500
    forget_images(removed)
    register_images(created)
    db.session.refresh(s)
    return jsonify({'subTask': subtask_view(s)})


@subtasks_bp.route('/subtasks/<subtask_id>', methods=['PATCH'])
@login_required
def patch_subtask(subtask_id):
    s = owned_subtask(subtask_id)
    data = request.get_json(force=True, silent=True) or {}
    if 'isCompleted' in data:
        s.is_completed = bool(data['isCompleted'])
    if 'order' in data:
        try:
            s.order = int(data['order'])
        except (TypeError, ValueError):
            return jsonify({'error': 'Invalid order'}), 400
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Error updating subtask %s', subtask_id)
        return jsonify({'error': 'Failed to update subtask'}), 500
    return jsonify({'subTask': s.to_dict()})


@subtasks_bp.route('/subtasks/<subtask_id>', methods=['DELETE'])
@login_required
def delete_subtask(subtask_id):
    s = owned_subtask(subtask_id)
    image_ids = image_ids_for_subtasks([s.id])
    try:
        db.session.delete(s)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception('Error deleting subtask %s', subtask_id)
        return jsonify({'error': 'Failed to delete subtask'}), 500
    forget_images(image_ids)
    return jsonify({'message': 'Subtask deleted successfully'})
