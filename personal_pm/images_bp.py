import logging
from flask import Blueprint, jsonify, abort
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError
from .db import db, ProjectDB, TaskDB, SubTaskDB, SubTaskImageDB
from .image_cache import get_image_cache
from .image_engine import resolve_image_payload, delete_images, forget_images, RecordPersistenceError

images_bp = Blueprint('images', __name__, url_prefix='/api/images')
logger = logging.getLogger(__name__)


def owned_image(image_id):
    img = (SubTaskImageDB.query
           .join(SubTaskDB, SubTaskImageDB.subtask_id == SubTaskDB.id)
           .join(TaskDB, SubTaskDB.task_id == TaskDB.id)
           .join(ProjectDB, TaskDB.project_id == ProjectDB.id)
           .filter(SubTaskImageDB.id == image_id, ProjectDB.user_id == current_user.get_id()).first())
    if not img:
        abort(404, description='Image not found')
    return img


@images_bp.route('/cache/stats', methods=['GET'])
@login_required
def cache_stats():
    if not getattr(current_user, 'is_admin', False):
        return jsonify({'error': 'Admin access required'}), 403
    return jsonify(get_image_cache().stats())


@images_bp.route('/<image_id>', methods=['GET'])
@login_required
def get_image(image_id):
    # Ownership is checked against the database; the payload comes from the cache when present
    img = owned_image(image_id)
    payload = resolve_image_payload(img)
    if payload is None:
        abort(404, description='Image not found')
    return jsonify({
        'id': payload.id,
        'base64Data': payload.base64_data,
        'mimeType': payload.mime_type,
        'filename': payload.filename,
    })


@images_bp.route('/<image_id>', methods=['DELETE'])
@login_required
def delete_image(image_id):
    img = owned_image(image_id)
    try:
        removed = delete_images([img.id])
        db.session.commit()
    except (RecordPersistenceError, SQLAlchemyError):
        db.session.rollback()
        logger.exception('Error deleting image %s', image_id)
        return jsonify({'error': 'Failed to delete image'}), 500
    forget_images(removed)
    return jsonify({'message': 'Image deleted successfully'})
