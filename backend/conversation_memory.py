"""
Conversation memory for follow-up questions.

Keeps the last few question/answer exchanges plus the latest scene summary
so a follow-up like "where is it?" can be answered with context.
"""

import time
from collections import deque
from dataclasses import dataclass
from typing import List, Optional

FOLLOW_UP_INDICATORS = [
    "where is",
    "where are",
    "which",
    "what about",
    "how many",
    "is there",
    "are there",
    "can you",
    "tell me more",
    "what else",
    "and",
    "also",
]


@dataclass
class Exchange:
    """One question/answer pair."""
    question: str
    answer: str
    frame_ref: Optional[str]
    timestamp: float


class ConversationMemory:
    """Bounded ring buffer of exchanges; oldest entries are evicted first."""

    def __init__(self, max_exchanges: int = 10):
        self.max_exchanges = max_exchanges
        self.history: deque[Exchange] = deque(maxlen=max_exchanges)
        self.scene_summary: Optional[str] = None

    def add_exchange(self, question: str, answer: str, frame_ref: Optional[str] = None):
        self.history.append(Exchange(
            question=question,
            answer=answer,
            frame_ref=frame_ref,
            timestamp=time.time(),
        ))

    def set_scene_summary(self, summary: str):
        self.scene_summary = summary

    @property
    def last_exchange(self) -> Optional[Exchange]:
        return self.history[-1] if self.history else None

    def get_context(self) -> str:
        """Render the memory as prompt context (empty string if nothing is known)."""
        parts: List[str] = []

        if self.scene_summary:
            parts.append(f"Current scene: {self.scene_summary}")

        last = self.last_exchange
        if last:
            parts.append(f"Previous question: {last.question}")
            parts.append(f"Previous answer: {last.answer}")

        if len(self.history) > 1:
            recent = list(self.history)[-3:]
            parts.append(
                "Recent conversation: "
                + "; ".join(f"Q: {e.question} A: {e.answer}" for e in recent)
            )

        return "\n".join(parts)

    def is_follow_up(self, question: str) -> bool:
        text = question.lower()
        return any(indicator in text for indicator in FOLLOW_UP_INDICATORS)

    def clear(self):
        self.history.clear()
        self.scene_summary = None
