import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
INSTANCE_DIR = os.path.join(os.path.dirname(BASE_DIR), 'instance')

DEFAULTS = {
    'SECRET_KEY': 'dev-insecure-change-me',
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///' + os.path.join(INSTANCE_DIR, 'personal_pm.db'),
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'IMAGE_CACHE_PATH': os.path.join(INSTANCE_DIR, 'cache', 'images.json'),
    'IMAGE_CACHE_MAX_AGE_DAYS': 30,
    # False => payload stays embedded in stored HTML next to the image row
    'IMAGE_STRIP_EMBEDDED_PAYLOAD': False,
    'LOG_LEVEL': 'INFO',
}

_TRUTHY = ('1', 'true', 'yes', 'on')


def _as_bool(value):
    return str(value).strip().lower() in _TRUTHY


def from_env(environ=None):
    """Collect overrides from environment variables.

    DATABASE_URL maps onto SQLALCHEMY_DATABASE_URI (same variable alembic reads).
    """
    environ = os.environ if environ is None else environ
    out = {}
    if environ.get('SECRET_KEY'):
        out['SECRET_KEY'] = environ['SECRET_KEY']
    if environ.get('DATABASE_URL'):
        out['SQLALCHEMY_DATABASE_URI'] = environ['DATABASE_URL']
    if environ.get('IMAGE_CACHE_PATH'):
        out['IMAGE_CACHE_PATH'] = environ['IMAGE_CACHE_PATH']
    if environ.get('IMAGE_CACHE_MAX_AGE_DAYS'):
        try:
            out['IMAGE_CACHE_MAX_AGE_DAYS'] = int(environ['IMAGE_CACHE_MAX_AGE_DAYS'])
        except ValueError:
            pass
    if 'IMAGE_STRIP_EMBEDDED_PAYLOAD' in environ:
        out['IMAGE_STRIP_EMBEDDED_PAYLOAD'] = _as_bool(environ['IMAGE_STRIP_EMBEDDED_PAYLOAD'])
    if environ.get('LOG_LEVEL'):
        out['LOG_LEVEL'] = environ['LOG_LEVEL'].upper()
    return out
