"""
Inference Adapter: handles all communication with the multimodal model.

One ``infer`` call is exactly one outbound chat-completions request to an
OpenAI-compatible endpoint, with the image attached next to the
instructions and the expected response shape requested as structured
output. The raw answer goes through the schema validator before anything
else sees it. There are no retries at this layer: failures come back as
typed ``InferenceError`` values and the caller decides what to do.

The model client is injected so tests can substitute a deterministic fake.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel

from renalscan.config import Settings
from renalscan.models.errors import InferenceError, InferenceErrorKind
from renalscan.models.result import Fail, Ok, Result
from renalscan.models.shapes import ResponseShape
from renalscan.prompts.builder import PromptPayload
from renalscan.services.schema_validator import validate

logger = logging.getLogger(__name__)

# Substrings of error messages from non-SDK clients that mean "try again later"
TRANSIENT_MARKERS = (
    "503", "502", "429", "service unavailable", "overloaded",
    "connection", "temporarily", "rate limit",
)
TIMEOUT_MARKERS = ("timeout", "timed out")


def create_client(settings: Settings) -> AsyncOpenAI:
    """Build the model client from settings. SDK-level retries are disabled."""
    return AsyncOpenAI(
        api_key=settings.api_key or "not-needed",
        base_url=settings.base_url or None,
        timeout=settings.request_timeout_seconds,
        max_retries=0,
    )


class InferenceAdapter:
    """
    Single-call interface for structured multimodal inference.

    Usage:
        adapter = InferenceAdapter(client, model_id="gemini-1.5-flash-latest")
        verdict = await adapter.infer(payload)
        if verdict.ok:
            parsed = verdict.value
    """

    def __init__(
        self,
        client: Any,
        model_id: str,
        timeout: float = 30.0,
        max_tokens: int = 1024,
        temperature: float = 0.2,
        fold_system_prompt: bool = False,
        structured_output: bool = True,
    ):
        self._client = client
        self.model_id = model_id
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.fold_system_prompt = fold_system_prompt
        self.structured_output = structured_output

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[Any] = None) -> "InferenceAdapter":
        return cls(
            client=client if client is not None else create_client(settings),
            model_id=settings.model_id,
            timeout=settings.request_timeout_seconds,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            fold_system_prompt=settings.fold_system_prompt,
            structured_output=settings.structured_output,
        )

    async def infer(
        self,
        payload: PromptPayload,
        shape: Optional[ResponseShape] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Result[BaseModel, InferenceError]:
        """
        Send one prompt to the model and validate the answer.

        Args:
            payload: Built prompt (instructions + inline image)
            shape: Expected response shape (defaults to the payload's shape)
            model_id: Model to call (defaults to the configured model)
            timeout: Seconds to wait for the answer (defaults to configured timeout)

        Returns:
            Ok(parsed response model) or Fail(InferenceError)
        """
        shape = shape or payload.shape
        model_id = model_id or self.model_id
        timeout = timeout or self.timeout
        call = payload.call_type

        request: Dict[str, Any] = {
            "model": model_id,
            "messages": self._build_messages(payload),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "timeout": timeout,
        }
        if self.structured_output:
            request["response_format"] = shape.response_format()

        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**request), timeout=timeout
            )
        except (asyncio.TimeoutError, openai.APITimeoutError):
            return self._fail(InferenceErrorKind.TIMEOUT, f"no answer within {timeout:.0f}s", payload)
        except (openai.APIConnectionError, openai.RateLimitError, openai.AuthenticationError,
                openai.PermissionDeniedError, openai.InternalServerError) as e:
            return self._fail(InferenceErrorKind.UNAVAILABLE, f"{type(e).__name__}: {e}", payload)
        except openai.APIStatusError as e:
            kind = InferenceErrorKind.UNAVAILABLE if e.status_code >= 500 else InferenceErrorKind.UNKNOWN
            return self._fail(kind, f"HTTP {e.status_code}: {e}", payload)
        except Exception as e:
            return self._fail(self._classify(e), f"{type(e).__name__}: {e}", payload)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        content = self._content(response)
        verdict = validate(content, shape)
        if isinstance(verdict, Fail):
            return Fail(InferenceError(
                kind=InferenceErrorKind.MALFORMED_OUTPUT,
                message=verdict.error.summary(),
                call_type=call,
                violations=verdict.error.violations,
            ))

        logger.info(f"{call.value} call to {model_id} succeeded ({elapsed_ms}ms, {shape.qualified_name})")
        return Ok(verdict.value)

    async def check_readiness(self) -> bool:
        """
        Lightweight probe to check if the model endpoint is accepting
        requests. Sends a tiny 1-token generate call.

        Returns True if the model responds, False on any error.
        """
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.model_id,
                    messages=[{"role": "user", "content": "ping"}],
                    max_tokens=1,
                    temperature=0.0,
                ),
                timeout=self.timeout,
            )
            return bool(response.choices)
        except Exception as e:
            logger.debug(f"Readiness probe failed: {e}")
            return False

    def _build_messages(self, payload: PromptPayload) -> List[Dict[str, Any]]:
        """Instructions and image go in the same user turn."""
        image_part = {"type": "image_url", "image_url": {"url": payload.image.uri}}
        if self.fold_system_prompt:
            text = f"{payload.system_prompt}\n\n{payload.instructions}"
            return [{"role": "user", "content": [{"type": "text", "text": text}, image_part]}]
        return [
            {"role": "system", "content": payload.system_prompt},
            {"role": "user", "content": [{"type": "text", "text": payload.instructions}, image_part]},
        ]

    @staticmethod
    def _content(response: Any) -> Optional[str]:
        choices = getattr(response, "choices", None)
        if not choices:
            return None
        return choices[0].message.content

    @staticmethod
    def _classify(error: Exception) -> InferenceErrorKind:
        """Best-effort kind for errors raised by clients other than the openai SDK."""
        if isinstance(error, TimeoutError):
            return InferenceErrorKind.TIMEOUT
        if isinstance(error, ConnectionError):
            return InferenceErrorKind.UNAVAILABLE
        error_str = str(error).lower()
        if any(marker in error_str for marker in TIMEOUT_MARKERS):
            return InferenceErrorKind.TIMEOUT
        if any(marker in error_str for marker in TRANSIENT_MARKERS):
            return InferenceErrorKind.UNAVAILABLE
        return InferenceErrorKind.UNKNOWN

    def _fail(self, kind: InferenceErrorKind, message: str, payload: PromptPayload) -> Fail[InferenceError]:
        logger.error(f"{payload.call_type.value} call to {self.model_id} failed ({kind.value}): {message}")
        return Fail(InferenceError(kind=kind, message=message, call_type=payload.call_type))
