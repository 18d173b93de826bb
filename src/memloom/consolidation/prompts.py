"""Prompt templates for fact extraction and memory adjudication."""

from __future__ import annotations

from datetime import date
from typing import Any, Iterable

from memloom.types import Message
from memloom.utils import json_dumps

_CATEGORY_GUIDE = """\
- USER_INFO: stable personal details (name, age, location, job, health, background).
- USER_PREFERENCE: likes, dislikes, tastes and habits.
- USER_GOAL: plans, intentions, ambitions and things the user is working towards.
- USER_RELATIONSHIP: people, pets and organisations in the user's life and how they relate.
- USER_EVENT: things that happened or will happen to the user at a specific time.
- OTHER: anything worth remembering that fits none of the above."""

FACT_RETRIEVAL_PROMPT = f"""You are a personal information organizer. You read conversations between a \
user and an assistant and pull out facts about the user that are worth remembering across future \
conversations.

Rules:
- Only extract facts stated or clearly implied by the user. Ignore what the assistant says about itself.
- Each fact is atomic: one piece of information, one short sentence, written in the third person \
("Likes black coffee", "Has a sister named Ana").
- Skip greetings, small talk and anything that will not matter in a later conversation.
- Do not repeat the same fact twice.
- Write facts in the language the user writes in.
- If nothing is worth remembering, return an empty list.

Categories:
{_CATEGORY_GUIDE}

For each fact give an importance between 0 and 1 (how useful it is for future conversations) and a \
confidence between 0 and 1 (how sure you are it is true).

Return JSON of the form {{"facts": [{{"text": "...", "category": "...", "importance": 0.0, \
"confidence": 0.0}}]}}."""

MEMORY_UPDATE_PROMPT = """You are the memory manager of a personal assistant. You compare newly \
extracted facts with what is already stored and decide how the memory should change.

Every item has a numeric id. Existing memories and new facts share one id space: existing memories \
come first, new facts continue the numbering.

For each new fact choose one of:
- ADD: the fact is new information. Use the fact's id and put the text to store in "text".
- UPDATE: the fact refines, corrects or extends an existing memory. Use the EXISTING memory's id, put \
the merged memory text in "text" and the fact's id in "source_id". Keep the richer wording when both \
say the same thing.
- Nothing: if the fact is already fully covered by an existing memory, leave it out.

Never invent ids. Never use a fact id with UPDATE or a memory id with ADD.

Return JSON of the form {"memory": [{"id": "...", "event": "ADD" | "UPDATE", "text": "...", \
"source_id": "..."}]}."""


def render_transcript(messages: Iterable[Message]) -> str:
    """One ``role: content`` line per message, in the given order."""
    lines = []
    for msg in messages:
        role = getattr(msg.role, "value", msg.role)
        lines.append(f"{role}: {msg.content}")
    return "\n".join(lines)


def fact_retrieval_prompt(transcript: str, today: date | None = None) -> str:
    """Extraction prompt for ``transcript``, dated at call time unless ``today`` is given."""
    day = (today or date.today()).isoformat()
    return f"{FACT_RETRIEVAL_PROMPT}\n\nToday's date is {day}.\n\nConversation:\n{transcript}"


def memory_update_prompt(existing: list[dict[str, Any]], facts: list[dict[str, Any]]) -> str:
    return (
        f"{MEMORY_UPDATE_PROMPT}\n\n"
        f"Existing memories:\n{json_dumps(existing) if existing else '[]'}\n\n"
        f"New facts:\n{json_dumps(facts)}"
    )
