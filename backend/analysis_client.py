"""
Gemini Analysis Client for Helios Voice Narrator

Vision narration and question answering over the standard Gemini API
(generate_content). Identical frame/instruction pairs are served from a
short-lived cache; transient failures are retried with exponential backoff.
"""

import asyncio
import hashlib
import logging
import os
import re
import time
from typing import Optional

from cachetools import TTLCache
from dotenv import load_dotenv
from google import genai
from google.genai.types import GenerateContentConfig, Part

from prompts import GENERAL_QUESTION_INSTRUCTION, SYSTEM_PROMPT
from vision_capture import Frame

load_dotenv()

logger = logging.getLogger(__name__)

# Errors that will fail the same way on every attempt
NON_RETRYABLE_MARKERS = ("API_KEY_INVALID", "PERMISSION_DENIED")

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_CARD = re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b")
_PHONE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")


class AnalysisError(Exception):
    """The analysis backend could not produce a result."""


def redact_pii(text: str) -> str:
    """Mask emails, card numbers and phone numbers before they are spoken."""
    text = _EMAIL.sub("[email redacted]", text)
    text = _CARD.sub("[card redacted]", text)
    text = _PHONE.sub("[phone redacted]", text)
    return text


def _create_client() -> genai.Client:
    project = os.environ.get("GOOGLE_CLOUD_PROJECT")
    if project:
        location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
        return genai.Client(vertexai=True, project=project, location=location)

    api_key = os.environ.get("GEMINI_API_KEY")
    if api_key:
        return genai.Client(api_key=api_key)

    raise ValueError("Neither GOOGLE_CLOUD_PROJECT nor GEMINI_API_KEY found in environment")


class GeminiAnalysisClient:
    """
    analyze(frame, instruction) and answer(question, frame) on top of Gemini.

    Both calls may be slow and may raise AnalysisError. Timeouts and
    cancellation are the caller's business.
    """

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        cache_ttl: int = 10,
        cache_maxsize: int = 50,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        client: Optional[genai.Client] = None,
    ):
        self.client = client or _create_client()
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.cache = TTLCache(maxsize=cache_maxsize, ttl=cache_ttl)

    def _cache_key(self, frame: Optional[Frame], instruction: str) -> str:
        image_hash = hashlib.md5(frame.data).hexdigest() if frame else "none"
        return hashlib.md5(f"{image_hash}_{instruction}".encode()).hexdigest()

    async def analyze(self, frame: Frame, instruction: str, redact: bool = True) -> str:
        """
        Narrate a camera frame.

        Args:
            frame: Still frame from VisionCapture
            instruction: What to look for and how to format it
            redact: Mask PII in the result (off when the caller needs raw digits)

        Returns:
            Narration text

        Raises:
            AnalysisError: If every attempt failed or the model returned nothing
        """
        cache_key = self._cache_key(frame, instruction)
        if cache_key in self.cache:
            logger.info("💾 Analysis cache hit")
            text = self.cache[cache_key]
        else:
            contents = [
                Part.from_bytes(data=frame.data, mime_type=frame.mime_type),
                instruction,
            ]
            text = await self._generate(contents)
            self.cache[cache_key] = text

        return redact_pii(text) if redact else text

    async def answer(self, question: str, frame: Optional[Frame] = None) -> str:
        """
        Answer a free-form question, using the camera frame when one is given.

        Raises:
            AnalysisError: If every attempt failed or the model returned nothing
        """
        contents = []
        if frame is not None:
            contents.append(Part.from_bytes(data=frame.data, mime_type=frame.mime_type))
        contents.append(f"{GENERAL_QUESTION_INSTRUCTION}\n\nQuestion: {question}")

        text = await self._generate(contents)
        return redact_pii(text)

    async def _generate(self, contents) -> str:
        config = GenerateContentConfig(
            system_instruction=SYSTEM_PROMPT,
            temperature=0.2,
            max_output_tokens=512,
        )

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            start_time = time.perf_counter()
            try:
                response = await self.client.aio.models.generate_content(
                    model=self.model,
                    contents=contents,
                    config=config,
                )
            except Exception as e:
                last_error = e
                message = str(e)
                if any(marker in message for marker in NON_RETRYABLE_MARKERS):
                    logger.error(f"❌ Gemini rejected request: {message}")
                    raise AnalysisError(message) from e
                if attempt == self.max_retries:
                    break
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(f"⚠️ Gemini call failed (attempt {attempt + 1}), retrying in {delay:.1f}s: {e}")
                await asyncio.sleep(delay)
                continue

            elapsed = (time.perf_counter() - start_time) * 1000
            text = (response.text or "").strip()
            if not text:
                raise AnalysisError("Empty response from Gemini")
            logger.info(f"✅ Gemini response in {elapsed:.0f}ms: '{text[:80]}'")
            return text

        logger.error(f"❌ Gemini call failed after {self.max_retries + 1} attempts: {last_error}")
        raise AnalysisError(str(last_error)) from last_error
