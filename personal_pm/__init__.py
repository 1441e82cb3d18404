import logging
import os

import click
from flask import Flask, jsonify
from flask_login import LoginManager

from . import config as app_config
from .db import db, UserDB, ensure_admin_user
from .image_cache import ImageCache

login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(UserDB, user_id)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Unauthorized'}), 401


def _configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def create_app(testing=False, config=None):
    app = Flask(__name__)
    app.config.update(app_config.DEFAULTS)
    app.config.update(app_config.from_env())
    if testing:
        app.config['TESTING'] = True
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///:memory:'
    if config:
        app.config.update(config)

    _configure_logging(app.config['LOG_LEVEL'])

    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(db_uri[len('sqlite:///'):]) or '.', exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)
    app.extensions['image_cache'] = ImageCache(app.config['IMAGE_CACHE_PATH'])

    from .auth_bp import auth_bp
    from .projects_bp import projects_bp
    from .subtasks_bp import subtasks_bp
    from .images_bp import images_bp
    from .notifications_bp import notifications_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(subtasks_bp)
    app.register_blueprint(images_bp)
    app.register_blueprint(notifications_bp)

    with app.app_context():
        db.create_all()

    @app.get('/health')
    def health():
        return jsonify({'status': 'ok'})

    @app.cli.command('sweep-image-cache')
    @click.option('--max-age-days', type=int, default=None, help='Defaults to IMAGE_CACHE_MAX_AGE_DAYS.')
    def sweep_image_cache(max_age_days):
        """Remove image cache entries older than the age threshold."""
        days = max_age_days if max_age_days is not None else app.config['IMAGE_CACHE_MAX_AGE_DAYS']
        removed = app.extensions['image_cache'].sweep(days)
        click.echo(f'Removed {removed} cached image(s) older than {days} days.')

    @app.cli.command('image-cache-stats')
    def image_cache_stats():
        stats = app.extensions['image_cache'].stats()
        click.echo(f"{stats['count']} cached image(s), ~{stats['size_human']}")

    @app.cli.command('seed-admin')
    @click.option('--username', default='admin')
    @click.option('--password', default='ChangeMe123!')
    def seed_admin(username, password):
        if ensure_admin_user(db.session, username=username, password=password):
            click.echo(f'Created admin user {username}.')
        else:
            click.echo('An admin user already exists.')

    return app
