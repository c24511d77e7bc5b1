from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from pymongo import ASCENDING, ReturnDocument

from .db import Settings, get_settings
from .errors import SessionNotFound, WriteConflict
from .models import Session

logger = logging.getLogger(__name__)

# Returning False from an update function means "nothing changed, skip the write".
UpdateFn = Callable[[Session], Optional[bool]]


class SessionStore:
    """Durable storage for game sessions.

    ``mutate`` is the only way session state changes after creation. It is an
    optimistic compare-and-swap on the document's ``version`` field, so a
    writer working from a stale read can never overwrite a newer document.
    """

    def __init__(self, collection: Any, config: Settings | None = None):
        self.collection = collection
        self.config = config or get_settings()

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("id", ASCENDING)], unique=True)
        # Codes are only unique among live sessions and get recycled afterwards.
        await self.collection.create_index(
            [("game_code", ASCENDING)],
            unique=True,
            partialFilterExpression={"live": True},
        )
        await self.collection.create_index([("teacher_id", ASCENDING), ("live", ASCENDING)])

    async def create(self, session: Session) -> str:
        session.version = 0
        await self.collection.insert_one(session.to_document())
        return session.session_id

    async def get(self, session_id: str) -> Session | None:
        doc = await self.collection.find_one({"id": session_id})
        return Session.from_document(doc) if doc else None

    async def get_by_code(self, code: str) -> Session | None:
        doc = await self.collection.find_one({"game_code": code, "live": True})
        return Session.from_document(doc) if doc else None

    async def list_for_teacher(self, teacher_id: str, live_only: bool = True) -> List[Session]:
        query: dict[str, Any] = {"teacher_id": teacher_id}
        if live_only:
            query["live"] = True
        cursor = self.collection.find(query).sort("created_at", ASCENDING)
        return [Session.from_document(doc) async for doc in cursor]

    async def mutate(self, session_id: str, update_fn: UpdateFn) -> Session:
        """Apply ``update_fn`` to the current session and commit it atomically.

        The function is re-run against a fresh read whenever another writer
        committed first. Exceptions it raises abort the mutation untouched.
        """
        attempts = max(1, self.config.STORE_MUTATE_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            doc = await self.collection.find_one({"id": session_id})
            if doc is None:
                raise SessionNotFound()

            session = Session.from_document(doc)
            expected_version = session.version
            if update_fn(session) is False:
                return session

            session.version = expected_version + 1
            new_doc = session.to_document()
            updated = await self.collection.find_one_and_update(
                {"id": session_id, "version": expected_version},
                {"$set": {k: v for k, v in new_doc.items() if k != "id"}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                return Session.from_document(updated)

            logger.debug("Session %s changed under us (attempt %d/%d)", session_id, attempt, attempts)

        raise WriteConflict(session_id, attempts)
