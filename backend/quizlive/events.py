from __future__ import annotations

from typing import Any, Dict, List

from pymongo import ASCENDING, ReturnDocument

from .db import db
from .utils import now_ts


def _as_event(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {"seq": doc["seq"], "timestamp": doc.get("timestamp"), "payload": doc.get("payload", {})}


class EventStore:
    """Sequenced log of every event broadcast to a session.

    Clients that dropped their websocket replay what they missed via HTTP.
    """

    def __init__(self, database: Any):
        self.counters = database.session_event_counters
        self.log = database.session_events

    async def _next_seq(self, session_id: str) -> int:
        counter = await self.counters.find_one_and_update(
            {"_id": session_id},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        if counter is None:
            # Cosmos DB's Mongo API upserts but hands back None.
            counter = await self.counters.find_one({"_id": session_id})
        return int(counter["seq"])

    async def append(self, session_id: str, payload: Dict[str, Any]) -> int:
        """Record an event for a session and return its sequence number."""
        seq = await self._next_seq(session_id)
        await self.log.insert_one(
            {"session_id": session_id, "seq": seq, "timestamp": now_ts(), "payload": payload}
        )
        return seq

    async def list(self, session_id: str, after: int | None = None, limit: int = 200) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"session_id": session_id}
        if after is not None:
            query["seq"] = {"$gt": after}
        cursor = self.log.find(query).sort("seq", ASCENDING).limit(limit)
        return [_as_event(doc) async for doc in cursor]


event_store = EventStore(db)
