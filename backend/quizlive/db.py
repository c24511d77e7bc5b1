from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ASCENDING, AsyncMongoClient, ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    CORS_ORIGIN_REGEX: Optional[str] = None

    # Leave unset to run against the in-process document store.
    MONGODB_URI: Optional[str] = None
    MONGODB_DATABASE: str = "quizlive"

    GAME_CODE_MAX_ATTEMPTS: int = 20
    STORE_MUTATE_ATTEMPTS: int = 32
    TRANSIENT_RETRIES: int = 3
    TRANSIENT_BACKOFF_SEC: float = 0.05

    DEFAULT_TIME_LIMIT_SEC: int = 30
    TIME_BONUS_RATIO: float = 0.25

    HOST: str = "127.0.0.1"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class InMemoryCursor:
    """Result of ``InMemoryCollection.find``, evaluated on first iteration."""

    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._order: List[Tuple[str, int]] = []
        self._limit = 0
        self._docs: Optional[List[Dict[str, Any]]] = None

    def sort(self, key_or_list, direction: int = ASCENDING):
        if isinstance(key_or_list, str):
            self._order = [(key_or_list, direction)]
        else:
            self._order = list(key_or_list)
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def _load(self) -> List[Dict[str, Any]]:
        docs = await self._collection._find_all(self._query)
        # Stable sorts: apply the least significant key first.
        for key, direction in reversed(self._order):
            docs.sort(key=lambda doc: doc.get(key), reverse=direction < 0)
        return docs[: self._limit] if self._limit else docs

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if self._docs is None:
            self._docs = await self._load()
        if not self._docs:
            raise StopAsyncIteration
        return self._docs.pop(0)


class InMemoryCollection:
    """Subset of the async pymongo collection API backed by a list of dicts.

    Every call copies documents in and out, so callers never share state with
    the stored documents. Each call is atomic with respect to the others.
    """

    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Dict[str, Any]):
        return InMemoryCursor(self, query)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return

            if upsert:
                new_doc = {k: v for k, v in copy.deepcopy(query).items() if not isinstance(v, dict)}
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def create_index(self, keys, **kwargs) -> str:
        # Indexes only matter for a real MongoDB deployment.
        return "_".join(f"{key}_{direction}" for key, direction in keys)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = {k: v for k, v in copy.deepcopy(query).items() if not isinstance(v, dict)}
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                for op, operand in expected.items():
                    if op == "$gt":
                        if actual is None or actual <= operand:
                            return False
                    elif op == "$in":
                        if actual not in operand:
                            return False
                    elif op == "$ne":
                        if actual == operand:
                            return False
                    else:  # pragma: no cover - extend as new operators are required
                        raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.sessions = InMemoryCollection()
        self.quizzes = InMemoryCollection()
        self.users = InMemoryCollection()
        self.session_event_counters = InMemoryCollection()
        self.session_events = InMemoryCollection()


def connect(config: Settings) -> Any:
    """Return a database handle: MongoDB when configured, otherwise in-memory."""
    if not config.MONGODB_URI:
        return InMemoryDatabase()
    client = AsyncMongoClient(config.MONGODB_URI, tz_aware=True)
    return client[config.MONGODB_DATABASE]


db: Any = connect(settings)
