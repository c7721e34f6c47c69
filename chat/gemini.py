# one generateContent call to the Gemini REST API

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx
from django.conf import settings
from django.utils.text import Truncator

from .store import FAILURE_NOTICE, CompletionError

log = logging.getLogger("techtutor")

SIMPLE_FRAMING = "Please explain this in simple terms, as if explaining to a beginner: {prompt}"
TECHNICAL_FRAMING = "Please provide a detailed technical explanation for: {prompt}"

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"


def frame_prompt(prompt: str, simple_mode: bool) -> str:
    template = SIMPLE_FRAMING if simple_mode else TECHNICAL_FRAMING
    return template.format(prompt=prompt)


def build_payload(prompt: str, simple_mode: bool, generation_config: Optional[dict] = None) -> dict:
    return {
        "contents": [{"parts": [{"text": frame_prompt(prompt, simple_mode)}]}],
        "generationConfig": dict(generation_config or settings.GENERATION_CONFIG),
        "safetySettings": [
            {"category": category, "threshold": SAFETY_THRESHOLD} for category in HARM_CATEGORIES
        ],
    }


def extract_text(data) -> str:
    return data["candidates"][0]["content"]["parts"][0]["text"]


class GeminiClient:
    def __init__(self, api_key=None, api_url=None, timeout=None, transport=None):
        self.api_key = settings.GEMINI_API_KEY if api_key is None else api_key
        self.api_url = api_url or settings.GEMINI_API_URL
        self.timeout = timeout or httpx.Timeout(
            connect=settings.CONNECT_TIMEOUT,
            read=settings.REQUEST_TIMEOUT,
            write=settings.REQUEST_TIMEOUT,
            pool=settings.CONNECT_TIMEOUT,
        )
        self.transport = transport

    def complete(self, prompt: str, simple_mode: bool = False) -> str:
        if not self.api_key:
            log.warning("Gemini call skipped: GEMINI_API_KEY is not set")
            raise CompletionError(FAILURE_NOTICE)

        payload = build_payload(prompt, simple_mode)
        try:
            t0 = time.time()
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                r = client.post(
                    self.api_url,
                    params={"key": self.api_key},
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
            r.raise_for_status()
            text = extract_text(r.json())
            dt_ms = (time.time() - t0) * 1000.0
        except httpx.HTTPError as e:
            log.warning("Gemini error: %s", e)
            raise CompletionError(FAILURE_NOTICE) from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            log.warning("Gemini returned an unexpected body: %r", e)
            raise CompletionError(FAILURE_NOTICE) from e

        log.info("Gemini chat %.0fms | simple=%s | prompt=%s",
                 dt_ms,
                 simple_mode,
                 Truncator(prompt).chars(120))
        return text

