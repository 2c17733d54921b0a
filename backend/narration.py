"""
Narration data model: coordinator states, the stop token, requests and items.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from intents import IntentKind


class CoordinatorState(Enum):
    """Exactly one of these is current; only the coordinator writes it."""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    PAUSED = "paused"


class StopToken:
    """
    Stop flag plus generation counter.

    Every request and scheduled callback is stamped with the generation that
    was current when it was created. Advancing the generation makes all of
    them stale at once; asserting the flag additionally blocks new speech
    until the next session clears it.
    """

    def __init__(self):
        self._asserted = False
        self._generation = 0

    @property
    def asserted(self) -> bool:
        return self._asserted

    @property
    def generation(self) -> int:
        return self._generation

    def advance(self) -> int:
        """Supersede everything issued so far."""
        self._generation += 1
        return self._generation

    def assert_stop(self) -> int:
        self._asserted = True
        return self.advance()

    def clear(self):
        self._asserted = False

    def is_current(self, generation: int) -> bool:
        return not self._asserted and generation == self._generation


@dataclass(frozen=True)
class NarrationRequest:
    """One call to the analysis backend. Immutable; superseded requests are abandoned."""
    prompt: str
    silent: bool = False
    quick: bool = False
    source_question: Optional[str] = None
    purpose: IntentKind = IntentKind.DESCRIBE_SCENE
    argument: Optional[str] = None
    travel: bool = False
    lead_in: float = 0.0  # seconds to wait before capturing (guided capture)
    needs_frame: bool = True
    generation: int = 0


# "1. item", "2) item" - only when preceded by start-of-text or whitespace,
# so decimals like "3.5 feet" never split.
_ITEM_MARKER = re.compile(r"(?:^|(?<=\s))(\d{1,2})[.)](?=\s)")


def split_narration_items(text: str) -> List[str]:
    """
    Split a narration into its numbered-list entries.

    Markers must count up from 1 without gaps; numbers that break the
    sequence stay part of the surrounding item. Text before "1." is dropped.
    Without a numbered list the whole narration is a single item.

    Args:
        text: Narration returned by the analysis backend

    Returns:
        Ordered list of items to speak (empty for blank text)
    """
    if not text or not text.strip():
        return []

    markers = []
    expected = 1
    for match in _ITEM_MARKER.finditer(text):
        if int(match.group(1)) == expected:
            markers.append(match)
            expected += 1

    if not markers:
        return [text.strip()]

    items = []
    for index, marker in enumerate(markers):
        end = markers[index + 1].start() if index + 1 < len(markers) else len(text)
        item = text[marker.end():end].strip()
        if item:
            items.append(item)

    return items or [text.strip()]
