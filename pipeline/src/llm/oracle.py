"""
Neighborhood News: AI Oracle Client
One prompt in, free text out. Shared by the scorer, generator and validator.
All calls go through LiteLLM (optionally via the LITELLM_PROXY_URL proxy).
"""

from __future__ import annotations
import json
import os
import re
import time
from typing import Callable, Optional

from pipeline.src.config import get_model, get_retry_policy, get_timeouts
from pipeline.src.errors import MalformedResponseError, OracleError

LITELLM_URL = os.environ.get("LITELLM_PROXY_URL", "")

LLMCaller = Callable[[str], str]

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?|\n?```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and the trailing ``` if present."""
    text = text.strip()
    if text.startswith("```"):
        text = _FENCE_RE.sub("", text).strip()
    return text


def decode_json_object(text: str) -> dict:
    """
    Decode the single JSON object the oracle was asked for.
    Raises MalformedResponseError with the raw text attached on any failure.
    """
    if text is None:
        raise MalformedResponseError("Oracle returned no text", raw_text="")
    cleaned = strip_code_fences(str(text))
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # Tolerate prose around the object: take the outermost braces.
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResponseError("Oracle returned invalid JSON", raw_text=str(text))
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Oracle returned invalid JSON: {e}", raw_text=str(text)) from e
    if not isinstance(data, dict):
        raise MalformedResponseError("Oracle JSON is not an object", raw_text=str(text))
    return data


def truncate_for_log(text: str, limit: int = 200) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


def _litellm_completion(model: str, prompt: str, max_tokens: int, timeout: float) -> str:
    import litellm
    kwargs = {}
    if LITELLM_URL:
        kwargs["api_base"] = LITELLM_URL
    response = litellm.completion(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        temperature=0.2,
        max_tokens=max_tokens,
        timeout=timeout,
        **kwargs,
    )
    return response.choices[0].message.content or ""


class OracleClient:
    """
    Calls the oracle with a timeout and bounded retries with exponential backoff.

    Args:
        stage: "scorer", "generator" or "validator" (selects model + token cap)
        caller: Optional callable(prompt) -> str, replaces LiteLLM (tests inject this)
    """

    def __init__(
        self,
        stage: str,
        caller: Optional[LLMCaller] = None,
        max_retries: Optional[int] = None,
        backoff: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        model = get_model(stage)
        policy = get_retry_policy()
        self.stage = stage
        self.model = model["name"]
        self.max_tokens = model["max_tokens"]
        self.caller = caller
        self.max_retries = policy["oracle_max_retries"] if max_retries is None else max_retries
        self.backoff = policy["oracle_backoff_seconds"] if backoff is None else backoff
        self.timeout = get_timeouts()["oracle_seconds"] if timeout is None else timeout

    def _call_once(self, prompt: str) -> str:
        if self.caller is not None:
            return self.caller(prompt)
        return _litellm_completion(self.model, prompt, self.max_tokens, self.timeout)

    def complete(self, prompt: str) -> str:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._call_once(prompt)
            except Exception as e:
                last_error = e
                if attempt < self.max_retries and self.backoff > 0:
                    time.sleep(self.backoff * (2 ** attempt))
        raise OracleError(
            f"{self.stage} oracle call failed after {self.max_retries + 1} attempts: "
            f"{type(last_error).__name__}: {last_error}"
        ) from last_error

    def complete_json(self, prompt: str) -> dict:
        """complete() + decode_json_object(). Raises OracleError or MalformedResponseError."""
        return decode_json_object(self.complete(prompt))
