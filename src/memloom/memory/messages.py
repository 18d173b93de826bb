"""Conversation turns and their extraction bookkeeping."""

from __future__ import annotations

from typing import Iterable

from memloom.storage.sqlite_store import SQLiteStore
from memloom.types import Message, Role, Story
from memloom.utils import utcnow


class MessageLog:
    def __init__(self, sqlite_store: SQLiteStore) -> None:
        self.sqlite = sqlite_store

    def create_story(self, user_id: str, name: str) -> Story:
        return self.sqlite.insert_story(Story(user_id=user_id, name=name))

    def bulk_insert(self, messages: Iterable[Message | tuple[int, str, str]]) -> list[Message]:
        """Insert messages in order, trimming content and skipping blank turns.

        Accepts ``Message`` objects or ``(story_id, role, content)`` tuples.
        """
        rows: list[Message] = []
        for item in messages:
            if isinstance(item, Message):
                msg = item
            else:
                story_id, role, content = item
                msg = Message(story_id=story_id, role=Role(role), content=content)
            content = (msg.content or "").strip()
            if not content:
                continue
            now = utcnow()
            msg.content = content
            msg.role = Role(msg.role)
            msg.created_at = now
            msg.updated_at = now
            rows.append(msg)
        if not rows:
            return []
        return self.sqlite.insert_messages(rows)

    def get_by_story(
        self,
        story_id: int,
        limit: int | None = None,
        offset: int | None = None,
        last_n: int | None = None,
    ) -> list[Message]:
        return self.sqlite.list_messages_by_story(story_id, limit=limit, offset=offset, last_n=last_n)

    def get_by_user(
        self,
        user_id: str,
        story_id: int | None = None,
        extracted: bool | None = None,
    ) -> list[Message]:
        return self.sqlite.list_messages_by_user(user_id, story_id=story_id, extracted=extracted)

    def get_unextracted(self, user_id: str) -> list[Message]:
        """All of the user's not-yet-extracted messages, oldest first."""
        return self.sqlite.list_messages_by_user(user_id, extracted=False)

    def mark_extracted(self, message_ids: Iterable[int]) -> int:
        """Mark messages extracted in a single batched update; returns rows changed."""
        return self.sqlite.mark_messages_extracted(message_ids)
