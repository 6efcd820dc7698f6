"""
Completion service backed by Ollama's /api/generate endpoint.

Public API
----------
OllamaLLMService.complete(prompt, system=None) -> ServiceResult[str]
OllamaLLMService.check_health()                -> bool
parse_json_response(text)                      -> (success, value)

``complete`` makes exactly one request with an explicit timeout.  Failures
(timeout, connection error, non-200, empty body) come back as
``ServiceResult.failed`` so callers can switch to their rule-based branch.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Optional, Tuple

import httpx

from app.config import settings
from app.services.results import ServiceResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Robust JSON parsing
# ---------------------------------------------------------------------------

def _try_json(text: str) -> Tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def strip_code_fences(text: str) -> str:
    """Remove ```json / ``` delimiters that models often wrap output in."""
    text = re.sub(r"^```(?:json|python|javascript|text)?\s*\n?", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\n?```\s*$", "", text)
    return text.strip()


def repair_json(text: str) -> str:
    """Repair trailing commas, Python literals and ``//`` comments."""
    text = re.sub(r",(\s*[}\]])", r"\1", text)
    text = re.sub(r"\bTrue\b", "true", text)
    text = re.sub(r"\bFalse\b", "false", text)
    text = re.sub(r"\bNone\b", "null", text)
    text = re.sub(r"(?<!:)//[^\n]*", "", text)
    return text.strip()


def extract_balanced(text: str, open_b: str, close_b: str) -> str:
    """
    Find the first complete balanced open_b ... close_b structure in *text*.
    Brackets inside JSON strings are ignored.  Returns "" if none is found.
    """
    start = text.find(open_b)
    if start == -1:
        return ""

    depth = 0
    in_string = False
    escape_next = False

    for i, ch in enumerate(text[start:], start=start):
        if escape_next:
            escape_next = False
            continue
        if ch == "\\" and in_string:
            escape_next = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == open_b:
            depth += 1
        elif ch == close_b:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""


def parse_json_response(response: str) -> Tuple[bool, Any]:
    """
    Try multiple strategies to parse JSON from potentially messy model output.

    Handles:
    - Markdown code fences (```json ... ```, ``` ... ```)
    - Trailing commas before ] or }
    - Python-style True / False / None and ``//`` comments
    - Truncated output: appends a closing bracket and retries
    - Surrounding prose: finds the first balanced [...] or {...} block

    Returns ``(success, parsed_value)``.
    """
    if not response or not response.strip():
        return False, None

    text = response.strip()

    ok, val = _try_json(text)
    if ok:
        return True, val

    stripped = strip_code_fences(text)
    if stripped != text:
        ok, val = _try_json(stripped)
        if ok:
            return True, val
        text = stripped

    fixed = repair_json(text)
    ok, val = _try_json(fixed)
    if ok:
        return True, val

    # Truncated output: close the outermost structure before looking inside it
    starts = [i for i in (fixed.find("["), fixed.find("{")) if i != -1]
    if starts:
        for suffix in ("]", "}", "}]"):
            ok, val = _try_json(fixed[min(starts):] + suffix)
            if ok:
                logger.debug("parse_json_response: recovered with suffix %r", suffix)
                return True, val

    # Whichever bracket appears first is the outermost structure
    pairs = [("[", "]"), ("{", "}")]
    pairs.sort(key=lambda p: text.find(p[0]) if text.find(p[0]) != -1 else len(text))
    for open_b, close_b in pairs:
        fragment = extract_balanced(text, open_b, close_b)
        if fragment:
            ok, val = _try_json(fragment)
            if ok:
                return True, val
            ok, val = _try_json(repair_json(fragment))
            if ok:
                return True, val

    logger.debug("parse_json_response: all strategies failed. Preview: %s", response[:200])
    return False, None


# ---------------------------------------------------------------------------
# Main service class
# ---------------------------------------------------------------------------

class OllamaLLMService:
    """
    Completion service via Ollama /api/generate.

    Limits concurrency to MAX_CONCURRENT simultaneous calls.  No retries:
    one request per call site, bounded by ``OLLAMA_TIMEOUT``.
    """

    MAX_CONCURRENT: int = 2

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = base_url or settings.OLLAMA_BASE_URL
        self.model = model or settings.OLLAMA_LLM_MODEL
        self.timeout_seconds = float(timeout or settings.OLLAMA_TIMEOUT)
        self.timeout = httpx.Timeout(self.timeout_seconds, connect=10.0)
        self._semaphore = asyncio.Semaphore(self.MAX_CONCURRENT)

    async def complete(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: int = 1500,
    ) -> ServiceResult[str]:
        """
        POST to Ollama /api/generate and return the response text.

        Returns ``ok(text)`` on success, ``failed(reason)`` otherwise.
        """
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "num_predict": max_tokens,
                "temperature": 0.2,
            },
        }
        if system:
            payload["system"] = system

        async with self._semaphore:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(f"{self.base_url}/api/generate", json=payload)
            except httpx.TimeoutException:
                logger.warning("complete: request timed out after %.0f s", self.timeout_seconds)
                return ServiceResult.failed("timeout")
            except httpx.ConnectError as exc:
                logger.warning("complete: connection error: %s", exc)
                return ServiceResult.failed(f"connect error: {exc}")
            except httpx.HTTPError as exc:
                logger.warning("complete: HTTP error: %s", exc)
                return ServiceResult.failed(f"http error: {exc}")

        if resp.status_code != 200:
            logger.warning(
                "complete: Ollama returned HTTP %d: %s",
                resp.status_code,
                resp.text[:300],
            )
            return ServiceResult.failed(f"status {resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            logger.warning("complete: Ollama returned a non-JSON body")
            return ServiceResult.failed("invalid JSON body")
        if not isinstance(body, dict):
            logger.warning("complete: Ollama returned %s instead of an object", type(body).__name__)
            return ServiceResult.failed("unexpected JSON body")

        text = body.get("response", "")
        if not isinstance(text, str):
            logger.warning("complete: 'response' field is not a string")
            return ServiceResult.failed("unexpected JSON body")

        if not text or not text.strip():
            logger.warning("complete: empty completion")
            return ServiceResult.failed("empty completion")
        return ServiceResult.ok(text)

    async def check_health(self) -> bool:
        """Return ``True`` if Ollama answers /api/tags with HTTP 200."""
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
                return resp.status_code == 200
        except Exception as exc:
            logger.warning("Ollama health check failed: %s", exc)
            return False
