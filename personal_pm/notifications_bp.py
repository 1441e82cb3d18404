"""Read side of user notifications.

Rows are written by the scheduled due-date check, which runs outside this
application; these routes only list, acknowledge and clear them.
"""
import logging
from flask import Blueprint, request, jsonify, abort
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError
from .db import db, NotificationDB

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')
logger = logging.getLogger(__name__)


def _own():
    return NotificationDB.query.filter_by(user_id=current_user.get_id())


def _commit_or_500(message):
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception(message)
        return jsonify({'error': message}), 500
    return None


@notifications_bp.route('', methods=['GET'])
@login_required
def list_notifications():
    q = _own()
    if request.args.get('includeRead') != 'true':
        q = q.filter_by(is_read=False)
    notifications = q.order_by(NotificationDB.created_at.desc()).all()
    return jsonify({
        'notifications': [n.to_dict() for n in notifications],
        'unreadCount': _own().filter_by(is_read=False).count(),
    })


@notifications_bp.route('', methods=['PATCH'])
@login_required
def mark_all_read():
    _own().filter_by(is_read=False).update({'is_read': True}, synchronize_session=False)
    failed = _commit_or_500('Failed to mark notifications as read')
    return failed or jsonify({'success': True})


@notifications_bp.route('', methods=['DELETE'])
@login_required
def delete_all():
    _own().delete(synchronize_session=False)
    failed = _commit_or_500('Failed to delete notifications')
    return failed or jsonify({'success': True})


@notifications_bp.route('/<notification_id>', methods=['PATCH'])
@login_required
def mark_read(notification_id):
    n = _own().filter_by(id=notification_id).first()
    if not n:
        abort(404, description='Notification not found')
    n.is_read = True
    failed = _commit_or_500('Failed to mark notification as read')
    return failed or jsonify({'success': True})
