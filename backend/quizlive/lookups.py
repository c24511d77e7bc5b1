"""Read-only views onto quizzes and user profiles owned by other services."""

from __future__ import annotations

from typing import Any

from .models import Quiz, UserProfile


class QuizDirectory:
    def __init__(self, collection: Any):
        self.collection = collection

    async def get_quiz(self, quiz_id: str) -> Quiz | None:
        doc = await self.collection.find_one({"quiz_id": quiz_id})
        return Quiz(**doc) if doc else None

    async def upsert_quiz(self, quiz: Quiz) -> None:
        await self.collection.update_one(
            {"quiz_id": quiz.quiz_id},
            {"$set": quiz.model_dump(mode="json")},
            upsert=True,
        )


class UserDirectory:
    def __init__(self, collection: Any):
        self.collection = collection

    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        doc = await self.collection.find_one({"user_id": user_id})
        return UserProfile(**doc) if doc else None

    async def upsert_user(self, profile: UserProfile) -> None:
        await self.collection.update_one(
            {"user_id": profile.user_id},
            {"$set": profile.model_dump(mode="json")},
            upsert=True,
        )
