"""
Completion service: OpenAI (primary) or Hugging Face router (fallback).

When OPENAI_API_KEY is set, uses OpenAI chat completions; otherwise uses the HF
router over httpx. If OpenAI fails or returns nothing and HF is configured,
falls back to HF. Raises LLMError when no provider produced text.
"""

import logging
import time
from dataclasses import dataclass

import httpx
from openai import AsyncOpenAI

from playbook.core.config import (
    HF_API_KEY,
    HF_CHAT_URL,
    HF_LLM_MODEL,
    LLM_API_TIMEOUT,
    OPENAI_API_KEY,
    OPENAI_LLM_MODEL,
)
from playbook.core.errors import LLMError
from playbook.services.text_processing import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass
class CompletionOptions:
    tag: str = ""  # calling stage, for logs and call accounting
    max_tokens: int = 512
    temperature: float = 0.2
    json_mode: bool = False
    system: str | None = None


@dataclass
class CompletionResult:
    text: str
    model: str
    tokens_in: int
    tokens_out: int
    latency_ms: float


def _messages(prompt: str, options: CompletionOptions) -> list[dict[str, str]]:
    messages = []
    if options.system:
        messages.append({"role": "system", "content": options.system})
    messages.append({"role": "user", "content": prompt})
    return messages


class CompletionService:
    """Async chat-completion client. One instance is shared by the app."""

    def __init__(
        self,
        *,
        openai_api_key: str = OPENAI_API_KEY,
        openai_model: str = OPENAI_LLM_MODEL,
        hf_api_key: str = HF_API_KEY,
        hf_model: str = HF_LLM_MODEL,
        timeout: float = LLM_API_TIMEOUT,
    ) -> None:
        self.openai_model = openai_model
        self.hf_api_key = hf_api_key
        self.hf_model = hf_model
        self.timeout = timeout
        self._openai = AsyncOpenAI(api_key=openai_api_key, timeout=timeout) if openai_api_key else None

    @property
    def configured(self) -> bool:
        return self._openai is not None or bool(self.hf_api_key)

    async def _call_openai(self, prompt: str, options: CompletionOptions) -> CompletionResult | None:
        start = time.perf_counter()
        kwargs = {}
        if options.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self._openai.chat.completions.create(
                model=self.openai_model,
                messages=_messages(prompt, options),
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                **kwargs,
            )
        except Exception as e:
            logger.warning("[llm:openai] request failed tag=%s: %s", options.tag, e)
            return None
        msg = response.choices[0].message if response.choices else None
        out = ((msg.content if msg else None) or "").strip()
        if not out:
            return None
        usage = getattr(response, "usage", None)
        logger.info("[llm:openai] OUT tag=%s response_len=%d", options.tag, len(out))
        return CompletionResult(
            text=out,
            model=self.openai_model,
            tokens_in=getattr(usage, "prompt_tokens", None) or estimate_tokens(prompt),
            tokens_out=getattr(usage, "completion_tokens", None) or estimate_tokens(out),
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    async def _call_hf(self, prompt: str, options: CompletionOptions) -> CompletionResult | None:
        if not self.hf_api_key:
            logger.warning("[llm:hf] no HF_API_KEY")
            return None
        start = time.perf_counter()
        headers = {"Authorization": f"Bearer {self.hf_api_key}", "Content-Type": "application/json"}
        payload = {
            "model": self.hf_model,
            "messages": _messages(prompt, options),
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(HF_CHAT_URL, json=payload, headers=headers)
            if response.status_code != 200:
                logger.warning("[llm:hf] HF LLM error %s: %s", response.status_code, response.text[:200])
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("[llm:hf] request failed tag=%s: %s", options.tag, e)
            return None
        choices = data.get("choices") or []
        if not (choices and isinstance(choices[0], dict)):
            return None
        out = ((choices[0].get("message") or {}).get("content") or "").strip()
        if not out:
            return None
        usage = data.get("usage") or {}
        logger.info("[llm:hf] OUT tag=%s response_len=%d", options.tag, len(out))
        return CompletionResult(
            text=out,
            model=self.hf_model,
            tokens_in=usage.get("prompt_tokens") or estimate_tokens(prompt),
            tokens_out=usage.get("completion_tokens") or estimate_tokens(out),
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> CompletionResult:
        options = options or CompletionOptions()
        logger.info("[llm] IN  tag=%s prompt_len=%d max_tokens=%d", options.tag, len(prompt), options.max_tokens)
        if self._openai is not None:
            result = await self._call_openai(prompt, options)
            if result is not None:
                return result
            logger.info("[llm] OpenAI returned nothing; falling back to Hugging Face")
        result = await self._call_hf(prompt, options)
        if result is None:
            raise LLMError(f"No completion produced for {options.tag or 'request'}")
        return result
