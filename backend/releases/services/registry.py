"""
Version Registry
================
Keyed-document store holding one AppVersion document per published build.

The registry only needs a small capability set from its backend:
get-all, get-by-key, query-by-field-equality with a limit, allocate a new
key, set and delete. Subclasses implement those primitives over raw dicts;
the typed methods here turn documents into AppVersion records.
"""

import logging
import threading
import uuid
from typing import Dict, List, Optional

from firebase_admin import db
from firebase_admin.exceptions import FirebaseError

from contracts.models import AppVersion
from .exceptions import RegistryError

logger = logging.getLogger(__name__)

# characters the Realtime Database refuses in a child key
INVALID_KEY_CHARS = set(".$#[]/?")


def is_valid_key(key) -> bool:
    return bool(key) and isinstance(key, str) and not INVALID_KEY_CHARS.intersection(key)


class VersionRegistry:
    """Base class for registry backends."""

    # Backend primitives

    def _fetch_all(self) -> Dict[str, dict]:
        raise NotImplementedError

    def _fetch(self, key: str) -> Optional[dict]:
        raise NotImplementedError

    def _query_equal(self, field: str, value, limit: Optional[int]) -> Dict[str, dict]:
        raise NotImplementedError

    def _push(self) -> str:
        raise NotImplementedError

    def _write(self, key: str, data: dict) -> None:
        raise NotImplementedError

    def _remove(self, key: str) -> None:
        raise NotImplementedError

    # Typed API

    @staticmethod
    def _records(documents: Optional[Dict[str, dict]]) -> List[AppVersion]:
        """
        Convert registry children to records.

        Children that are not documents (e.g. a placeholder left by a key
        allocation whose write never happened) are skipped.
        """
        records = []
        for key, data in (documents or {}).items():
            if not isinstance(data, dict) or not data.get('version'):
                continue
            try:
                records.append(AppVersion.from_dict(key, data))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed registry entry {key}: {e}")
        return records

    def all(self) -> List[AppVersion]:
        return self._records(self._fetch_all())

    def get(self, version_id: str) -> Optional[AppVersion]:
        if not is_valid_key(version_id):
            return None
        data = self._fetch(version_id)
        if not isinstance(data, dict) or not data.get('version'):
            return None
        return AppVersion.from_dict(version_id, data)

    def find_by_version_code(self, version_code: int, limit: Optional[int] = None) -> List[AppVersion]:
        return self._records(self._query_equal('version_code', version_code, limit))

    def allocate_id(self) -> str:
        """Reserve a new unique registry key."""
        return self._push()

    def save(self, record: AppVersion) -> None:
        self._write(record.id, record.to_dict())

    def delete(self, version_id: str) -> None:
        self._remove(version_id)

    def count(self) -> int:
        return len(self.all())


class FirebaseVersionRegistry(VersionRegistry):
    """
    Registry stored under one node of a Firebase Realtime Database.

    Equality queries on `version_code` need an `.indexOn` rule for that
    child in the database rules.
    """

    def __init__(self, app, path: str = 'versions'):
        self.path = path
        self._ref = db.reference(path, app=app)

    def _call(self, description: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (FirebaseError, ValueError) as e:
            logger.error(f"Firebase {description} failed on '{self.path}': {e}")
            raise RegistryError('Database error') from e

    def _fetch_all(self):
        return self._call('get', self._ref.get)

    def _fetch(self, key):
        return self._call('get', lambda: self._ref.child(key).get())

    def _query_equal(self, field, value, limit):
        query = self._ref.order_by_child(field).equal_to(value)
        if limit:
            query = query.limit_to_first(limit)
        return self._call('query', query.get)

    def _push(self):
        return self._call('push', self._ref.push).key

    def _write(self, key, data):
        self._call('set', lambda: self._ref.child(key).set(data))

    def _remove(self, key):
        self._call('delete', lambda: self._ref.child(key).delete())


class InMemoryVersionRegistry(VersionRegistry):
    """Process-local registry for development and tests."""

    def __init__(self, documents: Optional[Dict[str, dict]] = None):
        self._documents = dict(documents or {})
        self._lock = threading.Lock()

    def _fetch_all(self):
        with self._lock:
            return {key: dict(value) if isinstance(value, dict) else value
                    for key, value in self._documents.items()}

    def _fetch(self, key):
        with self._lock:
            value = self._documents.get(key)
            return dict(value) if isinstance(value, dict) else value

    def _query_equal(self, field, value, limit):
        with self._lock:
            matches = {
                key: dict(doc) for key, doc in self._documents.items()
                if isinstance(doc, dict) and doc.get(field) == value
            }
        if limit:
            matches = dict(list(matches.items())[:limit])
        return matches

    def _push(self):
        key = uuid.uuid4().hex
        with self._lock:
            self._documents[key] = ''
        return key

    def _write(self, key, data):
        with self._lock:
            self._documents[key] = dict(data)

    def _remove(self, key):
        with self._lock:
            self._documents.pop(key, None)
