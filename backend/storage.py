import os
import json
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "profiles", "habits")

# Failures raised by either backing store when it cannot be reached or written.
STORE_ERRORS: Tuple[type, ...] = (PyMongoError, OSError)


class _InMemoryResult:
    def __init__(self, *, matched_count: int = 0, deleted_count: int = 0, upserted_id: Any = None):
        self.matched_count = matched_count
        self.deleted_count = deleted_count
        self.upserted_id = upserted_id


def _apply_projection(doc: Dict[str, Any], projection: Optional[Dict[str, int]]) -> Dict[str, Any]:
    if not projection:
        return dict(doc)
    # Only exclusion projections like {"_id": 0, "password": 0} are used.
    excluded_keys = {k for k, v in projection.items() if v == 0}
    return {k: v for k, v in doc.items() if k not in excluded_keys}


def _match_filter(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in query.items():
        if isinstance(expected, dict):
            value = doc.get(key)
            if "$in" in expected and value not in expected["$in"]:
                return False
            continue

        if doc.get(key) != expected:
            return False
    return True


def _upserted_doc(query: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
    doc.update(update.get("$setOnInsert") or {})
    doc.update(update.get("$set") or {})
    return doc


class _InMemoryCursor:
    def __init__(self, docs: List[Dict[str, Any]], projection: Optional[Dict[str, int]]):
        self._docs = docs
        self._projection = projection
        self._sort: Optional[Tuple[str, int]] = None

    def sort(self, field: str, direction: int):
        self._sort = (field, direction)
        return self

    async def to_list(self, length: Optional[int]) -> List[Dict[str, Any]]:
        docs = list(self._docs)
        if self._sort is not None:
            field, direction = self._sort
            reverse = direction == -1
            docs.sort(key=lambda d: (d.get(field) is not None, d.get(field) or ""), reverse=reverse)

        limited = docs if length is None else docs[:length]
        return [_apply_projection(d, self._projection) for d in limited]


class _InMemoryCollection:
    def __init__(self):
        self._docs: List[Dict[str, Any]] = []

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None):
        for doc in self._docs:
            if _match_filter(doc, query):
                return _apply_projection(doc, projection)
        return None

    async def insert_one(self, doc: Dict[str, Any]):
        self._docs.append(dict(doc))
        return _InMemoryResult(matched_count=1)

    def find(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None) -> _InMemoryCursor:
        matched = [dict(d) for d in self._docs if _match_filter(d, query)]
        return _InMemoryCursor(matched, projection)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        update_set = update.get("$set") or {}

        for doc in self._docs:
            if _match_filter(doc, query):
                doc.update(update_set)
                return _InMemoryResult(matched_count=1)
        if upsert:
            self._docs.append(_upserted_doc(query, update))
            return _InMemoryResult(matched_count=0, upserted_id=len(self._docs))
        return _InMemoryResult(matched_count=0)

    async def delete_one(self, query: Dict[str, Any]):
        for i, doc in enumerate(self._docs):
            if _match_filter(doc, query):
                del self._docs[i]
                return _InMemoryResult(deleted_count=1)
        return _InMemoryResult(deleted_count=0)


class InMemoryDB:
    def __init__(self):
        self.users = _InMemoryCollection()
        self.profiles = _InMemoryCollection()
        self.habits = _InMemoryCollection()


class FileBackedDB:
    def __init__(self, path: Path):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        self._data: Dict[str, List[Dict[str, Any]]] = {key: [] for key in COLLECTIONS}
        self._load_from_disk()

        self.users = _FileBackedCollection(self, "users")
        self.profiles = _FileBackedCollection(self, "profiles")
        self.habits = _FileBackedCollection(self, "habits")

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            loaded = json.loads(raw) if raw.strip() else {}
        except (OSError, ValueError) as e:
            logger.warning("Failed to load file-backed DB (%s). Starting empty.", str(e))
            return
        if isinstance(loaded, dict):
            for key in COLLECTIONS:
                value = loaded.get(key)
                if isinstance(value, list):
                    self._data[key] = value

    async def _save_to_disk(self) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = json.dumps(self._data, ensure_ascii=False, separators=(",", ":"))
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self._path)


class _FileBackedCollection:
    """Collection persisted to the shared JSON file.

    Each mutation runs match, apply and save under the DB lock and is rolled
    back in memory when the save fails, so a write lands whole or not at all.
    """

    def __init__(self, db: FileBackedDB, key: str):
        self._db = db
        self._key = key

    def _docs(self) -> List[Dict[str, Any]]:
        return self._db._data[self._key]

    async def find_one(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None):
        async with self._db._lock:
            for doc in self._docs():
                if _match_filter(doc, query):
                    return _apply_projection(doc, projection)
        return None

    async def insert_one(self, doc: Dict[str, Any]):
        async with self._db._lock:
            self._docs().append(dict(doc))
            try:
                await self._db._save_to_disk()
            except OSError:
                self._docs().pop()
                raise
        return _InMemoryResult(matched_count=1)

    def find(self, query: Dict[str, Any], projection: Optional[Dict[str, int]] = None) -> _InMemoryCursor:
        # Cursor is consumed later; keep it independent of future mutations.
        matched = [dict(d) for d in self._docs() if _match_filter(d, query)]
        return _InMemoryCursor(matched, projection)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        update_set = update.get("$set") or {}

        async with self._db._lock:
            for doc in self._docs():
                if _match_filter(doc, query):
                    previous = dict(doc)
                    doc.update(update_set)
                    try:
                        await self._db._save_to_disk()
                    except OSError:
                        doc.clear()
                        doc.update(previous)
                        raise
                    return _InMemoryResult(matched_count=1)
            if not upsert:
                return _InMemoryResult(matched_count=0)

            self._docs().append(_upserted_doc(query, update))
            try:
                await self._db._save_to_disk()
            except OSError:
                self._docs().pop()
                raise
            return _InMemoryResult(matched_count=0, upserted_id=len(self._docs()))

    async def delete_one(self, query: Dict[str, Any]):
        async with self._db._lock:
            for i, doc in enumerate(self._docs()):
                if _match_filter(doc, query):
                    del self._docs()[i]
                    try:
                        await self._db._save_to_disk()
                    except OSError:
                        self._docs().insert(i, doc)
                        raise
                    return _InMemoryResult(deleted_count=1)
        return _InMemoryResult(deleted_count=0)


async def connect_database(
    mongo_url: Optional[str],
    db_name: str,
    data_file: Path,
) -> Tuple[Optional[AsyncIOMotorClient], Any]:
    """Connect to MongoDB, falling back to the JSON file store when unreachable."""
    if mongo_url:
        client = AsyncIOMotorClient(mongo_url, serverSelectionTimeoutMS=2000)
        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            logger.warning("MongoDB not available (%s). Falling back to file-backed DB.", str(e))
            client.close()
        else:
            logger.info("Connected to MongoDB: %s / %s", mongo_url, db_name)
            db = client[db_name]
            # Lets concurrent profile upserts collapse into one row.
            await db.profiles.create_index("user_id", unique=True)
            return client, db

    db = FileBackedDB(data_file)
    logger.warning("Using file-backed DB at %s (data persists between restarts).", str(data_file))
    return None, db
