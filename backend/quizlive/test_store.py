from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase, mock

from .db import InMemoryCollection, Settings
from .errors import SessionNotFound, WriteConflict
from .models import Participant, Session, SessionStatus
from .store import SessionStore


class _LosingCollection(InMemoryCollection):
    """Every compare-and-swap loses, as if another writer always got there first."""

    def __init__(self):
        super().__init__()
        self.swap_calls = 0

    async def find_one_and_update(self, query, update, **kwargs):
        self.swap_calls += 1
        return None


class _InterleavingCollection(InMemoryCollection):
    """Yields to the event loop after every read so writers interleave."""

    async def find_one(self, query):
        doc = await super().find_one(query)
        await asyncio.sleep(0)
        return doc


def _session(session_id: str = "s1", code: str = "123456", **kwargs) -> Session:
    return Session(
        session_id=session_id,
        quiz_id="q1",
        teacher_id="t1",
        class_id="c1",
        game_code=code,
        **kwargs,
    )


def _finish(session: Session) -> None:
    session.transition_to(SessionStatus.ACTIVE)
    session.transition_to(SessionStatus.COMPLETED)


class SessionStoreTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:  # noqa: D401 - standard unittest hook
        self.config = Settings(STORE_MUTATE_ATTEMPTS=5)
        self.store = SessionStore(InMemoryCollection(), self.config)

    async def test_create_and_get_round_trip(self):
        session_id = await self.store.create(_session())

        loaded = await self.store.get(session_id)

        self.assertEqual(loaded.session_id, "s1")
        self.assertEqual(loaded.status, SessionStatus.WAITING)
        self.assertEqual(loaded.participants, {})
        self.assertEqual(loaded.version, 0)

    async def test_get_unknown_session_returns_none(self):
        self.assertIsNone(await self.store.get("missing"))
        self.assertIsNone(await self.store.get_by_code("000000"))

    async def test_get_by_code_only_matches_live_sessions(self):
        await self.store.create(_session("old", "111111"))
        await self.store.mutate("old", _finish)
        await self.store.create(_session("new", "111111"))

        found = await self.store.get_by_code("111111")

        self.assertEqual(found.session_id, "new")

    async def test_get_by_code_ignores_completed_sessions(self):
        await self.store.create(_session("done", "222222"))
        await self.store.mutate("done", _finish)

        self.assertIsNone(await self.store.get_by_code("222222"))

    async def test_mutate_commits_and_bumps_version(self):
        await self.store.create(_session())

        def add(session):
            session.participants["u1"] = Participant(user_id="u1", user_name="Ada")

        updated = await self.store.mutate("s1", add)
        reloaded = await self.store.get("s1")

        self.assertEqual(updated.version, 1)
        self.assertEqual(list(reloaded.participants), ["u1"])

    async def test_mutate_returning_false_skips_the_write(self):
        await self.store.create(_session())

        result = await self.store.mutate("s1", lambda s: False)

        self.assertEqual(result.version, 0)
        self.assertEqual((await self.store.get("s1")).version, 0)

    async def test_mutate_propagates_update_errors_without_writing(self):
        await self.store.create(_session())

        def explode(session):
            session.current_question_index = 3
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            await self.store.mutate("s1", explode)

        reloaded = await self.store.get("s1")
        self.assertEqual(reloaded.current_question_index, 0)
        self.assertEqual(reloaded.version, 0)

    async def test_mutate_unknown_session_raises_not_found(self):
        with self.assertRaises(SessionNotFound):
            await self.store.mutate("missing", lambda s: None)

    async def test_mutate_gives_up_after_bounded_attempts(self):
        collection = _LosingCollection()
        store = SessionStore(collection, self.config)
        await store.create(_session())

        with self.assertRaises(WriteConflict) as ctx:
            await store.mutate("s1", lambda s: None)

        self.assertEqual(collection.swap_calls, 5)
        self.assertEqual(ctx.exception.attempts, 5)

    async def test_interleaved_mutations_do_not_lose_updates(self):
        store = SessionStore(_InterleavingCollection(), Settings(STORE_MUTATE_ATTEMPTS=32))
        await store.create(_session())

        def adder(user_id):
            def add(session):
                session.participants[user_id] = Participant(user_id=user_id, user_name=user_id)
            return add

        await asyncio.gather(*(store.mutate("s1", adder(f"u{i}")) for i in range(12)))

        final = await store.get("s1")
        self.assertEqual(len(final.participants), 12)
        self.assertEqual(final.version, 12)

    async def test_list_for_teacher_filters_live_sessions(self):
        await self.store.create(_session("a", "100000"))
        await self.store.create(_session("b", "200000"))
        await self.store.mutate("b", _finish)

        live = await self.store.list_for_teacher("t1")
        everything = await self.store.list_for_teacher("t1", live_only=False)

        self.assertEqual([s.session_id for s in live], ["a"])
        self.assertEqual(sorted(s.session_id for s in everything), ["a", "b"])

    async def test_ensure_indexes_declares_partial_unique_code_index(self):
        collection = mock.AsyncMock()
        store = SessionStore(collection, self.config)

        await store.ensure_indexes()

        code_call = next(
            call for call in collection.create_index.call_args_list if call.args[0][0][0] == "game_code"
        )
        self.assertTrue(code_call.kwargs["unique"])
        self.assertEqual(code_call.kwargs["partialFilterExpression"], {"live": True})


class InMemoryCursorTests(IsolatedAsyncioTestCase):
    async def test_sort_and_limit(self):
        collection = InMemoryCollection()
        for n, group in [(3, "a"), (1, "b"), (2, "a"), (5, "b")]:
            await collection.insert_one({"n": n, "group": group})

        top_two = [doc["n"] async for doc in collection.find({}).sort("n", -1).limit(2)]
        grouped = [(doc["group"], doc["n"]) async for doc in collection.find({}).sort([("group", 1), ("n", 1)])]

        self.assertEqual(top_two, [5, 3])
        self.assertEqual(grouped, [("a", 2), ("a", 3), ("b", 1), ("b", 5)])
