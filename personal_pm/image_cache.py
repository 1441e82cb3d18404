"""Disk-backed read-through cache for subtask image payloads.

The whole cache is one pretty-printed JSON object keyed by image id. Every
mutation re-reads the file under an exclusive lock held on a companion
``.lock`` file and rewrites it atomically (temp file + ``os.replace``), so
two writers in different processes no longer clobber each other's entries.

The database stays authoritative. Read failures degrade to an empty cache and
write failures are logged and reported through return values; neither is ever
raised to the caller.
"""
import contextlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, UTC

import portalocker
from flask import current_app

from .image_validation import estimated_size, validate_image

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_DAYS = 30


@dataclass
class CachedImage:
    id: str
    base64_data: str
    mime_type: str
    filename: str
    cached_at: datetime

    @property
    def data_url(self):
        return f'data:{self.mime_type};base64,{self.base64_data}'

    def to_dict(self):
        return {
            'id': self.id,
            'base64Data': self.base64_data,
            'mimeType': self.mime_type,
            'filename': self.filename,
            'cachedAt': self.cached_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, raw):
        cached_at = datetime.fromisoformat(raw['cachedAt'])
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=UTC)
        return cls(
            id=str(raw['id']),
            base64_data=raw['base64Data'],
            mime_type=raw['mimeType'],
            filename=raw.get('filename') or '',
            cached_at=cached_at,
        )


def _atomic_write_json(path, data):
    """Write ``data`` beside ``path`` and rename it into place."""
    fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix='.images-', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as out:
            json.dump(data, out, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def human_size(num_bytes):
    size = float(num_bytes)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f'{size:.1f} {unit}'
        size /= 1024
    return f'{size:.1f} TB'


class ImageCache:
    """Keyed store of ``CachedImage`` records persisted to a single JSON file."""

    def __init__(self, path):
        self.path = os.path.abspath(path)
        self.lock_path = self.path + '.lock'
        self._entries = None
        self._signature = None

    # --- Loading ---
    def _file_signature(self):
        try:
            st = os.stat(self.path)
        except OSError:
            return None
        # inode and size too: two writes inside one clock tick can share an mtime
        return (st.st_mtime_ns, st.st_ino, st.st_size)

    def _read_file(self):
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                portalocker.lock(f, portalocker.LOCK_SH)
                try:
                    data = json.load(f)
                finally:
                    portalocker.unlock(f)
        except (OSError, ValueError, portalocker.LockException) as e:
            # Corrupt file stays on disk until the next successful write replaces it
            logger.warning('Unreadable image cache at %s, treating as empty: %s', self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning('Image cache at %s is not a JSON object, treating as empty', self.path)
            return {}
        entries = {}
        for key, raw in data.items():
            try:
                entry = CachedImage.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning('Skipping malformed image cache entry %s: %s', key, e)
                continue
            if entry.id != key:
                logger.warning('Skipping image cache entry %s with mismatched id %s', key, entry.id)
                continue
            entries[key] = entry
        return entries

    def _current(self):
        signature = self._file_signature()
        if self._entries is None or signature != self._signature:
            self._entries = self._read_file()
            self._signature = signature
        return self._entries

    def _mutate(self, change):
        """Run ``change(entries) -> (result, changed)`` under the writer lock.

        Returns ``(result, ok)``; ``ok`` is False when the file could not be
        written, in which case the failure has already been logged.
        """
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(self.lock_path, 'w') as lock_f:
                portalocker.lock(lock_f, portalocker.LOCK_EX)
                try:
                    entries = self._read_file()
                    result, changed = change(entries)
                    if changed or not os.path.exists(self.path):
                        _atomic_write_json(self.path, {k: v.to_dict() for k, v in entries.items()})
                    self._entries = entries
                    self._signature = self._file_signature()
                finally:
                    portalocker.unlock(lock_f)
        except (OSError, TypeError, ValueError, portalocker.LockException) as e:
            logger.warning('Image cache write to %s failed: %s', self.path, e)
            self._entries = None
            return None, False
        return result, True

    # --- Operations ---
    def get(self, image_id):
        """Return a copy of the cached entry, or None when absent."""
        entry = self._current().get(str(image_id))
        return replace(entry) if entry is not None else None

    def put(self, image_id, base64_data, mime_type, filename, validate=True):
        """Store (or refresh) one image. Returns False if persisting failed.

        Raises ImageValidationError for rejected payloads unless ``validate``
        is False; nothing is written in that case.
        """
        if validate:
            validate_image(base64_data, mime_type)
        image_id = str(image_id)
        entry = CachedImage(
            id=image_id,
            base64_data=base64_data,
            mime_type=mime_type,
            filename=filename or '',
            cached_at=datetime.now(UTC),
        )

        def change(entries):
            entries[image_id] = entry
            return None, True

        _, ok = self._mutate(change)
        if ok:
            logger.debug('Cached image %s (%s)', image_id, mime_type)
        return ok

    def remove(self, image_id):
        image_id = str(image_id)

        def change(entries):
            if image_id in entries:
                del entries[image_id]
                return None, True
            return None, False

        _, ok = self._mutate(change)
        return ok

    def sweep(self, max_age_days=DEFAULT_MAX_AGE_DAYS, now=None):
        """Drop entries cached more than ``max_age_days`` ago; returns the count removed."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=max_age_days)

        def change(entries):
            stale = [k for k, v in entries.items() if v.cached_at < cutoff]
            for k in stale:
                del entries[k]
            return len(stale), bool(stale)

        removed, ok = self._mutate(change)
        if not ok:
            return 0
        if removed:
            logger.info('Swept %d image cache entries older than %d days', removed, max_age_days)
        return removed

    def clear(self):
        def change(entries):
            had = bool(entries)
            entries.clear()
            return None, had

        _, ok = self._mutate(change)
        return ok

    def stats(self):
        entries = self._current()
        size = sum(estimated_size(e.base64_data) for e in entries.values())
        return {
            'count': len(entries),
            'approximate_size_bytes': int(size),
            'size_human': human_size(size),
        }


def get_image_cache():
    return current_app.extensions['image_cache']
