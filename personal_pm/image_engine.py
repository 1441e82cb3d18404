"""Inline image handling for subtask descriptions.

Write path: ``<img src="data:...">`` tags in freshly authored HTML become
``SubTaskImageDB`` rows and the tags gain a ``data-image-id`` marker.
Read path: markers are resolved back to ``data:`` URLs through the image
cache, falling back to the database and repopulating the cache on a miss.

Tags are handled left to right. On write, image *k* is attached to the *k*-th
unmarked data-URL tag; on read, tags are matched by their identifier only.
"""
import logging
import re
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from .db import db, SubTaskDB, SubTaskImageDB, TaskDB
from .image_cache import CachedImage, get_image_cache
from .image_validation import ImageValidationError, validate_image

logger = logging.getLogger(__name__)

__all__ = [
    'EmbeddedImage', 'ExtractionResult', 'ImageValidationError', 'RecordPersistenceError',
    'find_embedded_images', 'validate_embedded_images', 'extract_and_register', 'register_images',
    'strip_marked_payloads',
    'resolve_image_payload', 'resolve_for_display',
    'delete_images', 'forget_images', 'next_image_order',
    'image_ids_for_subtasks', 'image_ids_for_tasks', 'image_ids_for_projects',
]

IMG_TAG_RE = re.compile(r'''<img\b(?:[^>"']|"[^"]*"|'[^']*')*>''', re.IGNORECASE)
SRC_ATTR_RE = re.compile(r'''(?<![\w-])src\s*=\s*(["'])(.*?)\1''', re.IGNORECASE | re.DOTALL)
IMAGE_ID_ATTR_RE = re.compile(r'''(?<![\w-])data-image-id\s*=\s*(["'])(.*?)\1''', re.IGNORECASE)
DATA_URL_RE = re.compile(r'^data:([^;,]*);base64,(.*)$', re.IGNORECASE | re.DOTALL)


class RecordPersistenceError(RuntimeError):
    """Image rows could not be written; the enclosing request must fail."""


@dataclass
class EmbeddedImage:
    mime_type: str
    base64_data: str
    start: int
    end: int
    tag: str


@dataclass
class ExtractionResult:
    rewritten_html: str
    created_images: list = field(default_factory=list)


def image_filename(order, mime_type):
    subtype = mime_type.split('/', 1)[1] if '/' in mime_type else ''
    ext = subtype.split('+', 1)[0].strip()
    return f'image-{order}.{ext or "png"}'


def find_embedded_images(html):
    """Unmarked ``<img>`` tags whose src is a base64 data URL, in document order."""
    found = []
    for m in IMG_TAG_RE.finditer(html or ''):
        tag = m.group(0)
        if IMAGE_ID_ATTR_RE.search(tag):
            continue
        src = SRC_ATTR_RE.search(tag)
        if not src:
            continue
        data = DATA_URL_RE.match(src.group(2).strip())
        if not data:
            continue
        found.append(EmbeddedImage(
            mime_type=data.group(1).strip().lower(),
            base64_data=data.group(2).strip(),
            start=m.start(),
            end=m.end(),
            tag=tag,
        ))
    return found


def validate_embedded_images(html):
    """Validate every unmarked embedded image; raises ImageValidationError on the first bad one."""
    embedded = find_embedded_images(html)
    for img in embedded:
        validate_image(img.base64_data, img.mime_type)
    return embedded


def _set_src(tag, value):
    if SRC_ATTR_RE.search(tag):
        return SRC_ATTR_RE.sub(lambda m: f'src={m.group(1)}{value}{m.group(1)}', tag, count=1)
    return re.sub(r'^<img\b', lambda m: f'{m.group(0)} src="{value}"', tag, count=1, flags=re.IGNORECASE)


def _mark_tag(tag, image_id):
    return re.sub(r'^<img\b', lambda m: f'{m.group(0)} data-image-id="{image_id}"', tag,
                  count=1, flags=re.IGNORECASE)


def strip_marked_payloads(html):
    """Blank the ``src`` of every marked tag still carrying a ``data:`` URL.

    Covers tags marked in this write and tags that come back from a client
    already marked, with the payload filled in by the read path.
    """
    def strip(m):
        tag = m.group(0)
        src = SRC_ATTR_RE.search(tag)
        if not IMAGE_ID_ATTR_RE.search(tag) or not src or not DATA_URL_RE.match(src.group(2).strip()):
            return tag
        return _set_src(tag, '')

    return IMG_TAG_RE.sub(strip, html)


def extract_and_register(description_html, subtask_id, *, session=None, start_order=0, strip_payload=False):
    """Turn embedded data-URL images into image rows attached to ``subtask_id``.

    Every image is validated before anything is added to the session, so one
    bad image rejects the whole write. Rows are flushed (to get ids) but not
    committed; the caller commits them with the subtask and only then calls
    :func:`register_images`.
    """
    embedded = validate_embedded_images(description_html)
    if not embedded:
        if strip_payload and description_html:
            description_html = strip_marked_payloads(description_html)
        return ExtractionResult(description_html, [])

    session = session or db.session
    created = []
    for index, img in enumerate(embedded, start=1):
        order = start_order + index
        created.append(SubTaskImageDB(
            subtask_id=subtask_id,
            filename=image_filename(order, img.mime_type),
            base64_data=img.base64_data,
            mime_type=img.mime_type,
            order=order,
        ))
    try:
        session.add_all(created)
        session.flush()
    except SQLAlchemyError as e:
        raise RecordPersistenceError(f'Failed to persist images for subtask {subtask_id}') from e

    # Consume the original tags left to right, one per created row
    parts = []
    pos = 0
    for img, record in zip(embedded, created):
        parts.append(description_html[pos:img.start])
        parts.append(_mark_tag(img.tag, record.id))
        pos = img.end
    parts.append(description_html[pos:])
    rewritten = ''.join(parts)
    if strip_payload:
        rewritten = strip_marked_payloads(rewritten)
    logger.info('Extracted %d image(s) for subtask %s', len(created), subtask_id)
    return ExtractionResult(rewritten, created)


def register_images(images):
    """Cache freshly committed image rows; returns how many were cached."""
    cache = get_image_cache()
    cached = 0
    for image in images:
        if cache.put(image.id, image.base64_data, image.mime_type, image.filename, validate=False):
            cached += 1
    return cached


def _meta_id(meta):
    if isinstance(meta, dict):
        return str(meta['id'])
    return str(meta.id)


def resolve_image_payload(meta):
    """Cached payload for one image, loading and caching it from the database on a miss."""
    image_id = _meta_id(meta)
    cache = get_image_cache()
    hit = cache.get(image_id)
    if hit is not None:
        return hit
    logger.debug('Image cache miss for %s', image_id)
    row = db.session.get(SubTaskImageDB, image_id)
    if row is None:
        return None
    cache.put(row.id, row.base64_data, row.mime_type, row.filename, validate=False)
    return CachedImage(
        id=row.id,
        base64_data=row.base64_data,
        mime_type=row.mime_type,
        filename=row.filename,
        cached_at=row.created_at,
    )


def resolve_for_display(description_html, image_metadata_list):
    """Rewrite every marked tag's src to the image's ``data:`` URL.

    Markers with no metadata, or whose row no longer exists, are left as they are.
    """
    if not description_html or not image_metadata_list:
        return description_html
    urls = {}
    for meta in image_metadata_list:
        payload = resolve_image_payload(meta)
        if payload is None:
            logger.debug('Unresolved image reference %s', _meta_id(meta))
            continue
        urls[payload.id] = payload.data_url
    if not urls:
        return description_html

    def replace_tag(m):
        tag = m.group(0)
        marker = IMAGE_ID_ATTR_RE.search(tag)
        if not marker or marker.group(2) not in urls:
            return tag
        return _set_src(tag, urls[marker.group(2)])

    return IMG_TAG_RE.sub(replace_tag, description_html)


# --- Deletion ---

def next_image_order(subtask_id):
    current = db.session.query(db.func.max(SubTaskImageDB.order)).filter(
        SubTaskImageDB.subtask_id == subtask_id).scalar()
    return current or 0


def delete_images(image_ids, *, subtask_id=None, session=None):
    """Delete image rows (not committed). Returns the ids actually deleted."""
    ids = [str(i) for i in image_ids or []]
    if not ids:
        return []
    session = session or db.session
    try:
        q = session.query(SubTaskImageDB).filter(SubTaskImageDB.id.in_(ids))
        if subtask_id is not None:
            q = q.filter(SubTaskImageDB.subtask_id == subtask_id)
        rows = q.all()
        for row in rows:
            session.delete(row)
        session.flush()
    except SQLAlchemyError as e:
        raise RecordPersistenceError('Failed to delete images') from e
    return [row.id for row in rows]


def forget_images(image_ids):
    """Drop cache entries for deleted rows; the cache never follows database cascades itself."""
    cache = get_image_cache()
    return sum(1 for image_id in image_ids if cache.remove(image_id))


def image_ids_for_subtasks(subtask_ids):
    if not subtask_ids:
        return []
    rows = db.session.query(SubTaskImageDB.id).filter(SubTaskImageDB.subtask_id.in_(list(subtask_ids)))
    return [r[0] for r in rows]


def image_ids_for_tasks(task_ids):
    if not task_ids:
        return []
    rows = (db.session.query(SubTaskImageDB.id)
            .join(SubTaskDB, SubTaskImageDB.subtask_id == SubTaskDB.id)
            .filter(SubTaskDB.task_id.in_(list(task_ids))))
    return [r[0] for r in rows]


def image_ids_for_projects(project_ids):
    if not project_ids:
        return []
    rows = (db.session.query(SubTaskImageDB.id)
            .join(SubTaskDB, SubTaskImageDB.subtask_id == SubTaskDB.id)
            .join(TaskDB, SubTaskDB.task_id == TaskDB.id)
            .filter(TaskDB.project_id.in_(list(project_ids))))
    return [r[0] for r in rows]
