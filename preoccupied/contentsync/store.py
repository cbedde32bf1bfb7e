"""
Named-value state stores shared by the sync, deploy, and progress
components.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
"""

import json
import logging
import os
import tempfile
import threading
import time
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class StateStore:
    """
    get/set/delete of named JSON-compatible values, with an optional
    time-to-live in seconds. Expired values read as absent.
    """

    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError()


    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        raise NotImplementedError()


    def delete(self, key: str) -> None:
        raise NotImplementedError()


    def has(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel


def _expired(entry: Dict[str, Any], now: float) -> bool:
    expires = entry.get('expires')
    return expires is not None and expires <= now


class MemoryStateStore(StateStore):
    """
    Process-local store. Used as the fast-read cache in front of the
    durable store, and in tests.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()


    def get(self, key, default=None):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            if _expired(entry, time.time()):
                del self._data[key]
                return default
            return entry['value']


    def set(self, key, value, ttl=None):
        expires = (time.time() + ttl) if ttl else None
        with self._lock:
            self._data[key] = {'value': value, 'expires': expires}


    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)


class FileStateStore(StateStore):
    """
    Durable store backed by a single JSON file. Every write replaces the
    file atomically.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()


    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {}

        with open(self.path, 'r') as f:
            try:
                return json.load(f)
            except ValueError:
                logger.error(f'State file {self.path} is corrupt, starting empty', exc_info=True)
                return {}


    def _save(self, data: Dict[str, Dict[str, Any]]) -> None:
        dirname = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(dirname, exist_ok=True)

        fd, tmp = tempfile.mkstemp(dir=dirname, prefix='.state-')
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


    def get(self, key, default=None):
        with self._lock:
            entry = self._load().get(key)
        if entry is None or _expired(entry, time.time()):
            return default
        return entry['value']


    def set(self, key, value, ttl=None):
        expires = (time.time() + ttl) if ttl else None
        with self._lock:
            data = self._load()
            data[key] = {'value': value, 'expires': expires}
            self._save(data)


    def delete(self, key):
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)


# The end.
