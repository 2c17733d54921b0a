"""
Command Interpreter for Helios Voice Narrator

Maps a finalized utterance to an Intent using a priority-ordered phrase table.
The first matching rule wins, so table order IS the tie-break:
stop-family phrases first, then navigation, then scene descriptions,
then parameterized and question intents, then the general-question fallback.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple


class IntentKind(Enum):
    """Everything the user can ask for by voice."""
    STOP = "stop"
    STOP_NAVIGATION = "stop_navigation"
    START_NAVIGATION = "start_navigation"
    DESCRIBE_SCENE = "describe_scene"
    DESCRIBE_DETAIL = "describe_detail"
    LOCATION_QUESTION = "location_question"
    COUNT = "count"
    YES_NO = "yes_no"
    AVAILABILITY = "availability"
    OPEN_CLOSED = "open_closed"
    QUEUE = "queue"
    OBSTACLES = "obstacles"
    DIRECTIONS = "directions"
    PEOPLE = "people"
    READ_TEXT = "read_text"
    SCAN_BARCODE = "scan_barcode"
    LOCATE_OBJECT = "locate_object"
    DESCRIBE_IMAGE = "describe_image"
    GENERAL_QUESTION = "general_question"


@dataclass(frozen=True)
class Intent:
    """Result of classifying one utterance."""
    kind: IntentKind
    utterance: str
    argument: Optional[str] = None  # e.g. the object in "find my keys"


@dataclass(frozen=True)
class IntentRule:
    """One row of the phrase table."""
    kind: IntentKind
    phrases: Tuple[str, ...] = ()
    # Extra matcher for rules that need more than a substring (e.g. "what" + "see")
    predicate: Optional[Callable[[str], bool]] = None
    # Trailing-phrase pattern; group 1 becomes Intent.argument
    argument_pattern: Optional[str] = None

    def matches(self, text: str) -> bool:
        if any(phrase in text for phrase in self.phrases):
            return True
        return self.predicate is not None and self.predicate(text)

    def extract_argument(self, text: str) -> Optional[str]:
        if not self.argument_pattern:
            return None
        match = re.search(self.argument_pattern, text)
        if not match:
            return None
        return match.group(1).strip(" .,!?:;\"'").strip() or None


# ============================================================================
# PHRASE TABLE (order matters - first match wins)
# ============================================================================

DEFAULT_RULES: List[IntentRule] = [
    # Stop family. Navigation-specific stops come first so "stop walking"
    # turns travel mode off instead of ending the whole session.
    IntentRule(IntentKind.STOP_NAVIGATION, (
        "stop walking", "stop travel", "exit travel",
        "stop navigation", "stop navigating", "i stopped",
    )),
    IntentRule(IntentKind.STOP, (
        "stop", "cancel", "enough", "shut up", "quiet", "silence",
    )),

    # Navigation start
    IntentRule(IntentKind.START_NAVIGATION, (
        "walking", "travel", "navigate", "walk", "guide me",
    )),

    # Scene descriptions
    IntentRule(
        IntentKind.DESCRIBE_SCENE,
        (
            "what do you see", "what can you see", "what's ahead", "what is ahead",
            "what's in front", "what is in front",
        ),
        predicate=lambda text: "what" in text and "see" in text,
    ),
    IntentRule(IntentKind.DESCRIBE_DETAIL, (
        "describe in detail", "describe everything", "full description",
    )),

    # Follow-up style questions answered from the current frame
    IntentRule(IntentKind.LOCATION_QUESTION, ("where is", "where are", "where did", "where can")),
    IntentRule(IntentKind.COUNT, ("how many",)),
    IntentRule(IntentKind.YES_NO, ("is there", "are there", "is the", "are the")),
    IntentRule(IntentKind.AVAILABILITY, ("empty", "available", "free")),
    IntentRule(IntentKind.OPEN_CLOSED, ("open", "closed")),
    IntentRule(IntentKind.QUEUE, ("queue", "line", "waiting")),
    IntentRule(IntentKind.OBSTACLES, (
        "obstacle", "hurdle", "danger", "anything in my way", "anything blocking", "is it safe",
    )),
    IntentRule(IntentKind.DIRECTIONS, (
        "which way", "where should i go", "how do i get", "turn", "left", "right", "straight",
    )),
    IntentRule(IntentKind.PEOPLE, (
        "anyone", "any people", "people nearby", "someone", "who is", "who are",
    )),

    # Guided capture
    IntentRule(IntentKind.READ_TEXT, ("read", "what does this say", "what text")),
    IntentRule(IntentKind.SCAN_BARCODE, ("scan barcode", "what product", "what is this product")),
    IntentRule(
        IntentKind.LOCATE_OBJECT,
        ("find my", "find the", "locate"),
        argument_pattern=r"(?:find my|find the|locate)\s+(.+)",
    ),
    IntentRule(
        IntentKind.DESCRIBE_IMAGE,
        predicate=lambda text: "describe" in text and "image" in text,
    ),
]


class CommandInterpreter:
    """
    Priority-ordered phrase matcher.

    Matching is case-insensitive substring matching over the rule table.
    Anything that matches no rule is forwarded as a general question.
    """

    def __init__(self, rules: Optional[List[IntentRule]] = None):
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    def classify(self, utterance: str) -> Optional[Intent]:
        """
        Classify a finalized utterance.

        Args:
            utterance: Raw recognizer text

        Returns:
            The first matching Intent, or None for an empty utterance
        """
        if not utterance or not utterance.strip():
            return None

        raw = utterance.strip()
        text = raw.lower()

        for rule in self.rules:
            if rule.matches(text):
                argument = rule.extract_argument(text)
                if rule.argument_pattern and not argument:
                    # "find my" with nothing after it - treat as a plain question
                    break
                return Intent(kind=rule.kind, utterance=raw, argument=argument)

        return Intent(kind=IntentKind.GENERAL_QUESTION, utterance=raw)
