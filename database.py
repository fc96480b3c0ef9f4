"""
Flat-file JSON store

One JSON document holds every collection the backend knows about. All access goes
through a single re-entrant lock, and `transaction()` gives handlers a
read-modify-write block that is persisted only when the block exits cleanly.
"""
import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "reports", "messages", "schedules", "healthLogs")

Document = Dict[str, List[Dict[str, Any]]]


class StoreError(Exception):
    """The store file could not be read or written."""


def empty_document() -> Document:
    return {name: [] for name in COLLECTIONS}


class JsonStore:
    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._lock = threading.RLock()

    # -----------------------------
    # Raw file access (lock held)
    # -----------------------------

    def _load(self) -> Document:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return empty_document()
        except (OSError, ValueError) as e:
            logger.error("Failed to read store %s: %s", self.path, e)
            raise StoreError(f"Cannot read store: {e}") from e
        if not isinstance(data, dict):
            raise StoreError("Store root must be a JSON object")
        for name in COLLECTIONS:
            if not isinstance(data.get(name), list):
                data[name] = []
        return data

    def _dump(self, data: Document) -> None:
        directory = os.path.dirname(self.path)
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".db-", suffix=".json", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            logger.error("Failed to write store %s: %s", self.path, e)
            raise StoreError(f"Cannot write store: {e}") from e

    # -----------------------------
    # Public API
    # -----------------------------

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def read(self) -> Document:
        with self._lock:
            return self._load()

    def get(self, collection: str) -> List[Dict[str, Any]]:
        _check_collection(collection)
        with self._lock:
            return self._load()[collection]

    def put(self, collection: str, records: List[Dict[str, Any]]) -> None:
        _check_collection(collection)
        with self.transaction() as data:
            data[collection] = copy.deepcopy(records)

    @contextmanager
    def transaction(self) -> Iterator[Document]:
        """Yield the whole document; write it back if the block raises nothing."""
        with self._lock:
            data = self._load()
            yield data
            self._dump(data)


def _check_collection(name: str) -> None:
    if name not in COLLECTIONS:
        raise KeyError(f"Unknown collection '{name}'")
