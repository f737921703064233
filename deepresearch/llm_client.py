"""OpenRouter LLM client with schema-validated JSON generation."""
from __future__ import annotations

import json
import re
import time
from typing import Any, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from deepresearch.config import settings
from deepresearch.services import logger as log_service

SchemaT = TypeVar("SchemaT", bound=BaseModel)

JSON_SYSTEM_PROMPT = (
    "You are a careful research assistant. Reply with a single JSON object only, "
    "without markdown fences or commentary."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class LLMNotConfiguredError(RuntimeError):
    """Raised when no OpenRouter API key is configured."""


class StructuredOutputError(ValueError):
    """Raised when model output cannot be parsed into the requested schema."""


def is_configured() -> bool:
    return bool(settings.openrouter_api_key.strip())


def get_client() -> AsyncOpenAI:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    if not is_configured():
        raise LLMNotConfiguredError("OPENROUTER_API_KEY is not configured")
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=base_url)


def get_model(purpose: str | None = None) -> str:
    """Get the OpenRouter model id for a purpose (planner, web_search or default)."""
    if purpose == "planner" and settings.planner_model:
        return settings.planner_model
    if purpose == "web_search":
        return settings.web_search_model
    return settings.default_model


_client: AsyncOpenAI | None = None


def client() -> AsyncOpenAI:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


def _temperature_for_model(model: str) -> int:
    # Some OpenAI GPT-5-compatible gateways reject temperature=0.
    return 1 if "gpt-5" in (model or "").lower() else 0


def extract_json_payload(text: str) -> dict[str, Any]:
    """Parse the first JSON object out of a model reply."""
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start < 0 or end <= start:
            raise StructuredOutputError("Model reply did not contain a JSON object")
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise StructuredOutputError(f"Model reply is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise StructuredOutputError("Model reply JSON must be an object")
    return parsed


async def complete(
    prompt: str,
    *,
    caller: str,
    model: str | None = None,
    system: str | None = None,
    json_mode: bool = False,
    max_tokens: int | None = None,
) -> Any:
    """Run one chat completion and log it. Returns the raw SDK response."""
    active_model = model or get_model()
    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    kwargs: dict[str, Any] = {
        "model": active_model,
        "messages": messages,
        "max_tokens": max_tokens or settings.llm_max_tokens,
        "temperature": _temperature_for_model(active_model),
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    t0 = time.monotonic()
    try:
        response = await client().chat.completions.create(**kwargs)
    except Exception as exc:
        log_service.log_llm_call(
            model=active_model,
            caller=caller,
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="error",
            error=str(exc),
        )
        raise

    usage = getattr(response, "usage", None)
    log_service.log_llm_call(
        model=active_model,
        caller=caller,
        input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
        output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        duration_ms=int((time.monotonic() - t0) * 1000),
    )
    return response


async def generate_structured(
    schema: type[SchemaT],
    prompt: str,
    *,
    caller: str,
    model: str | None = None,
) -> SchemaT:
    """Generate a JSON object and validate it against ``schema``.

    Raises LLMNotConfiguredError, StructuredOutputError or the SDK's transport
    errors; callers decide on their own fallback.
    """
    response = await complete(
        prompt,
        caller=caller,
        model=model,
        system=JSON_SYSTEM_PROMPT,
        json_mode=True,
    )
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise StructuredOutputError("Model returned no choices")
    text = getattr(choices[0].message, "content", None) or ""
    payload = extract_json_payload(text)
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise StructuredOutputError(f"{schema.__name__} validation failed: {exc.error_count()} error(s)") from exc
