import logging
import time
from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from werkzeug.security import check_password_hash
from .db import UserDB

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')
logger = logging.getLogger(__name__)


class LoginThrottle:
    """Failed logins per ip+username within a sliding window."""

    def __init__(self, window=600, max_failures=5):
        self.window = window
        self.max_failures = max_failures
        self.failures = {}

    def retry_after(self, key, now=None):
        """Seconds until ``key`` may try again; 0 when it is not blocked."""
        now = time.time() if now is None else now
        recent = [t for t in self.failures.get(key, ()) if now - t < self.window]
        if recent:
            self.failures[key] = recent
        else:
            self.failures.pop(key, None)
        if len(recent) < self.max_failures:
            return 0
        return int(self.window - (now - recent[0])) or 1

    def record_failure(self, key, now=None):
        self.failures.setdefault(key, []).append(time.time() if now is None else now)

    def reset(self, key):
        self.failures.pop(key, None)

    def clear(self):
        self.failures.clear()


login_throttle = LoginThrottle()


@auth_bp.post('/login')
def login():
    data = request.get_json(force=True, silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400
    key = (request.remote_addr or 'unknown') + '|' + username.lower()
    wait = login_throttle.retry_after(key)
    if wait:
        return jsonify({'error': f'Too many login attempts. Try again in ~{wait} seconds.'}), 429
    user = UserDB.query.filter(UserDB.username.ilike(username)).first()
    if user and check_password_hash(user.password_hash, password):
        login_throttle.reset(key)
        login_user(user)
        return jsonify({'user': user.to_dict()})
    login_throttle.record_failure(key)
    logger.info('Failed login for %s', username)
    return jsonify({'error': 'Invalid username or password'}), 401

@auth_bp.post('/logout')
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out'})

@auth_bp.get('/user')
@login_required
def user():
    return jsonify({'user': current_user.to_dict()})
