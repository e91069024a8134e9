"""OpenAI-compatible client for the text-generation capability."""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from config import Settings
from .logging_utils import get_logger

logger = get_logger(__name__)


class LLMConfigurationError(RuntimeError):
    """Raised when the generation endpoint is not configured."""


class TextGenerator(Protocol):
    """Anything that turns a system instruction plus user payload into reply text."""

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        image: Optional[bytes] = None,
        temperature: float = 0.0,
        model: Optional[str] = None,
    ) -> str:
        ...


class LLMClient:
    """
    Thin async wrapper around chat completions.

    Only the complete reply text matters to the pipeline; streaming is an
    implementation detail toggled by ``HARVEST_LLM_STREAM``.
    """

    def __init__(self, settings: Settings, *, client: Optional[AsyncOpenAI] = None):
        if client is None and not settings.llm_configured:
            raise LLMConfigurationError(
                "HARVEST_LLM_API_KEY and HARVEST_LLM_MODEL are required for the generation client"
            )
        self.settings = settings
        self.model = settings.llm_model or ""
        self.stream = settings.llm_stream
        self._client = client or AsyncOpenAI(
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url or None,
            timeout=settings.llm_timeout,
        )
        logger.info("Initialized LLM client (model=%s, stream=%s)", self.model, self.stream)

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        image: Optional[bytes] = None,
        temperature: float = 0.0,
        model: Optional[str] = None,
    ) -> str:
        """
        Send one chat request and return the full reply text, stripped.

        Args:
            system_prompt: Instruction placed in the system message.
            user_prompt: User payload text.
            image: Optional PNG bytes attached as a data URL (vision requests).
            temperature: Sampling temperature.
            model: Override the configured model for this call.

        Raises:
            OpenAIError: If the provider rejects the request.
        """
        messages = self._build_messages(system_prompt, user_prompt, image)
        target_model = model or self.model
        logger.debug(
            "Requesting completion (model=%s, prompt_chars=%s, image=%s)",
            target_model,
            len(user_prompt),
            image is not None,
        )
        try:
            if self.stream:
                content = await self._collect_stream(target_model, messages, temperature)
            else:
                response = await self._client.chat.completions.create(
                    model=target_model,
                    messages=messages,
                    temperature=temperature,
                )
                content = response.choices[0].message.content or ""
        except OpenAIError as exc:
            logger.error("LLM request failed (%s): %s", type(exc).__name__, exc)
            raise

        logger.debug("Completion received (%s chars)", len(content))
        return content.strip()

    async def _collect_stream(
        self, model: str, messages: List[Dict[str, Any]], temperature: float
    ) -> str:
        pieces: List[str] = []
        stream = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta and delta.content:
                pieces.append(delta.content)
        return "".join(pieces)

    @staticmethod
    def _build_messages(
        system_prompt: str, user_prompt: str, image: Optional[bytes]
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if image is None:
            messages.append({"role": "user", "content": user_prompt})
            return messages
        data_url = "data:image/png;base64," + base64.b64encode(image).decode("ascii")
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": user_prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }
        )
        return messages
