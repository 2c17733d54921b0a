"""
Prompt text and spoken messages for the narrator.

Instructions sent to the vision model ask for numbered lists wherever the
answer is narrated item by item, so the coordinator can split them.
"""

from typing import Optional

from intents import IntentKind

SYSTEM_PROMPT = """You are the eyes of a blind person holding a phone camera.
- Prioritize safety (vehicles, obstacles, stairs, curbs)
- Be direct and spatial ("on your left", "three steps ahead")
- Give distances in feet
- Never mention that you are looking at an image"""

_LIST_FORMAT = (
    'Format as a numbered list: "1. [item]. 2. [item]. 3. [item]. 4. [item]. 5. [item]." '
    "Each item must be 5-10 words max. "
    'Do NOT say "top 5" or "here are 5 things" - just list the 5 numbered items directly.'
)

_SHORT = "Keep response to 1-2 sentences max."

# ============================================================================
# INSTRUCTIONS PER INTENT
# ============================================================================

SCENE_INSTRUCTION = (
    "List EXACTLY 5 most important things in this scene for a blind person. "
    f"{_LIST_FORMAT} Focus on: 1) Immediate obstacles or hazards, 2) People nearby and their "
    "position, 3) Path ahead (clear/blocked), 4) Important objects or text, "
    "5) Distance or spatial relationships."
)

DETAIL_INSTRUCTION = (
    "Describe this scene in detail for a blind person. Cover the layout, objects and their "
    "positions, people, visible text and any hazards. Use short sentences."
)

TRAVEL_INSTRUCTION = (
    "List EXACTLY 5 most important things for navigation as a blind person is walking. "
    f"{_LIST_FORMAT} Focus on: 1) Immediate path ahead - clear/blocked/obstacle with distance, "
    "2) People nearby - position and distance, 3) Steps/curbs/elevation changes - height and "
    "distance, 4) Doors/openings - open/closed and distance, 5) Hazards to avoid - location "
    "and distance."
)

OBSTACLES_INSTRUCTION = (
    f"List EXACTLY 5 obstacles, hazards, or dangers in this scene. {_LIST_FORMAT} "
    "For each item, describe location and how to avoid. If the path is clear, say "
    '"1. Path is clear" and list 4 other observations.'
)

DIRECTIONS_INSTRUCTION = (
    f"List EXACTLY 5 navigation instructions. {_LIST_FORMAT} Focus on: 1) Next turn - "
    "direction and distance, 2) Doors/openings - state and distance, 3) Stairs/steps - "
    "direction and distance, 4) Landmarks - location and distance, 5) Distance to next action."
)

PEOPLE_INSTRUCTION = (
    f"List EXACTLY 5 people in this scene. {_LIST_FORMAT} For each person: location, "
    'distance, and position. If no people visible, say "1. No people visible" and list 4 '
    "other observations."
)

IMAGE_INSTRUCTION = (
    "List EXACTLY 5 most important things in this image. "
    f"{_LIST_FORMAT} Focus on: 1) Main objects or people, 2) Their positions "
    "(left/right/center), 3) Important text if visible, 4) Any obstacles or notable "
    "features, 5) Distance or spatial relationships."
)

QUESTION_INSTRUCTIONS = {
    IntentKind.LOCATION_QUESTION: (
        "Answer the location question. Be very specific about positions (left, right, "
        f"center, ahead, behind, distance). {_SHORT}"
    ),
    IntentKind.COUNT: f"Count and provide exact numbers. Be specific about what you are counting. {_SHORT}",
    IntentKind.YES_NO: f"Provide a clear yes or no answer first, then describe what you see. {_SHORT}",
    IntentKind.AVAILABILITY: (
        f"Focus on availability and empty spaces. Describe what is available or empty. {_SHORT}"
    ),
    IntentKind.OPEN_CLOSED: (
        "Focus on the state of doors, windows, or openings. Describe if they are open or "
        f"closed. {_SHORT}"
    ),
    IntentKind.QUEUE: f"Focus on people waiting, lines, or queues. Describe the length and position. {_SHORT}",
}

READ_TEXT_INSTRUCTION = (
    "Extract all text from this image. Return only the text content, preserving line breaks "
    "and structure. If text is unclear, mention it. If there is no text, return NO_TEXT."
)

BARCODE_INSTRUCTION = (
    "Look for a barcode in this image. If you find one, extract the barcode number. "
    'Return ONLY the barcode number if found, or "NO_BARCODE" if no barcode is visible.'
)


def product_instruction(barcode: str) -> str:
    return (
        f"This image contains a product with barcode {barcode}. Identify the product name, "
        "brand, size, and category. Be concise."
    )


def locate_instruction(object_name: str) -> str:
    return (
        f"Look for a {object_name} in this image. If you find it, describe its exact location "
        "(left, right, center, ahead, behind, up, down) and approximate distance in feet. "
        'If the object is not visible, say "NOT_FOUND".'
    )


GENERAL_QUESTION_INSTRUCTION = (
    "Answer the user's question briefly and clearly, as if speaking out loud. "
    "If a camera image is attached and relevant, use it."
)

# Focus hints appended to scene instructions for specific question shapes
_FOCUS_HINTS = [
    (("where is", "where are"),
     "Focus on location and spatial relationships. Be very specific about positions "
     "(left, right, center, ahead, behind, distance in feet or meters)."),
    (("how many",), "Count and provide exact numbers. Be specific."),
    (("is there", "are there"),
     "Provide a clear yes or no answer first, then describe what you see."),
    (("is the", "are the"),
     "Provide a clear yes or no answer first, then describe the state or condition."),
    (("empty", "available"),
     "Focus on availability and empty spaces. Describe what is available or empty."),
    (("open", "closed"),
     "Focus on the state of doors, windows, or openings. Describe if they are open or closed."),
    (("queue", "line"),
     "Focus on people waiting, lines, or queues. Describe the length and position."),
]


def enhance_instruction(
    instruction: str,
    question: Optional[str] = None,
    memory_context: Optional[str] = None,
) -> str:
    """
    Add follow-up context and a question-specific focus hint to an instruction.

    Args:
        instruction: Base instruction for the intent
        question: The user's original utterance, if any
        memory_context: Rendered ConversationMemory context for follow-ups

    Returns:
        The enhanced instruction
    """
    enhanced = instruction

    if memory_context:
        enhanced = (
            f"{enhanced}\n\nPrevious context: {memory_context}\n\n"
            "This is a follow-up question. Use the previous context to provide a more "
            "detailed or specific answer."
        )

    if question:
        lower = question.lower()
        for phrases, hint in _FOCUS_HINTS:
            if any(phrase in lower for phrase in phrases):
                enhanced = f"{enhanced}\n\n{hint}"
                break

    return enhanced


# ============================================================================
# SPOKEN MESSAGES
# ============================================================================

GREETING = (
    'I am listening continuously. Just speak naturally. Say "what do you see" to describe '
    'your surroundings, or "I am walking" to start navigation assistance.'
)
NAVIGATION_ACTIVATED = (
    "Navigation assistance activated. I will continuously describe your path and "
    "surroundings as you walk."
)
NAVIGATION_ALREADY_ACTIVE = "Navigation assistance is already active."
NAVIGATION_STOPPED = "Navigation assistance stopped. I am still listening for your commands."
CAMERA_NOT_READY = "Please wait for camera to be ready, then try again."
CAPTURE_FAILED = "Unable to capture image. Please ensure camera is enabled and ready."
ANALYSIS_FAILED = "Failed to analyze scene. Please try again."
QUESTION_FAILED = "I could not process that request. Please try again."
MICROPHONE_UNAVAILABLE = (
    "I can no longer hear you. Please check your microphone permissions and start again."
)

READ_TEXT_HINT = "Point your camera at the text. I will read it in a moment."
READ_TEXT_PREFIX = "I found the following text:"
NO_TEXT_FOUND = (
    "No text detected. Please move closer, ensure good lighting, and point camera directly "
    "at the text."
)

BARCODE_HINT = "Point your camera at the barcode. I will scan and identify the product."
NO_BARCODE_FOUND = "No barcode detected. Please ensure the barcode is clearly visible and well-lit."
BARCODE_UNREADABLE = "Barcode detected but could not read the number. Please try again with better lighting."


def locate_hint(object_name: str) -> str:
    return f"Looking for {object_name}. Point your camera around the area."


def object_found(object_name: str, location: str) -> str:
    return f"I found {object_name}. {location}"


def object_not_found(object_name: str) -> str:
    return f"{object_name} not found in this view. Try moving the camera or adjusting the angle."
