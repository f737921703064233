"""Tests for the OpenRouter client helpers."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from deepresearch import llm_client
from deepresearch.llm_client import (
    LLMNotConfiguredError,
    StructuredOutputError,
    extract_json_payload,
    generate_structured,
    get_model,
)
from deepresearch.models.research import FinalReportSynthesis


def _response(content: str):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=34),
    )


def _fake_client(content: str) -> MagicMock:
    fake = MagicMock()
    fake.chat.completions.create = AsyncMock(return_value=_response(content))
    return fake


class TestExtractJsonPayload:
    def test_plain_object(self):
        assert extract_json_payload('{"a": 1}') == {"a": 1}

    def test_fenced_object(self):
        assert extract_json_payload('```json\n{"a": [1, 2]}\n```') == {"a": [1, 2]}

    def test_object_embedded_in_prose(self):
        assert extract_json_payload('Here you go: {"a": "b"} hope it helps') == {"a": "b"}

    def test_rejects_non_objects(self):
        with pytest.raises(StructuredOutputError):
            extract_json_payload("[1, 2, 3]")
        with pytest.raises(StructuredOutputError):
            extract_json_payload("no json here")


class TestGetModel:
    def test_planner_override(self):
        with patch("deepresearch.llm_client.settings") as mock_settings:
            mock_settings.planner_model = "openai/gpt-4.1"
            mock_settings.default_model = "openai/gpt-4o-mini"
            assert get_model("planner") == "openai/gpt-4.1"
            assert get_model() == "openai/gpt-4o-mini"

    def test_planner_falls_back_to_default(self):
        with patch("deepresearch.llm_client.settings") as mock_settings:
            mock_settings.planner_model = ""
            mock_settings.default_model = "openai/gpt-4o-mini"
            assert get_model("planner") == "openai/gpt-4o-mini"

    def test_web_search_model(self):
        with patch("deepresearch.llm_client.settings") as mock_settings:
            mock_settings.web_search_model = "openai/gpt-4o-mini:online"
            assert get_model("web_search") == "openai/gpt-4o-mini:online"


def test_get_client_requires_key():
    with pytest.raises(LLMNotConfiguredError):
        llm_client.get_client()


@pytest.mark.asyncio
async def test_generate_structured_validates_schema():
    fake = _fake_client('{"executive_summary": "Short", "plain_text_report": "Longer report"}')
    with patch("deepresearch.llm_client.client", return_value=fake):
        result = await generate_structured(FinalReportSynthesis, "prompt", caller="test")

    assert result.executive_summary == "Short"
    kwargs = fake.chat.completions.create.await_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["messages"][0]["role"] == "system"
    assert kwargs["messages"][-1] == {"role": "user", "content": "prompt"}


@pytest.mark.asyncio
async def test_generate_structured_raises_on_schema_mismatch():
    fake = _fake_client('{"executive_summary": ""}')
    with patch("deepresearch.llm_client.client", return_value=fake):
        with pytest.raises(StructuredOutputError):
            await generate_structured(FinalReportSynthesis, "prompt", caller="test")


@pytest.mark.asyncio
async def test_complete_logs_and_reraises_transport_errors():
    fake = MagicMock()
    fake.chat.completions.create = AsyncMock(side_effect=RuntimeError("gateway down"))
    with patch("deepresearch.llm_client.client", return_value=fake), patch(
        "deepresearch.llm_client.log_service.log_llm_call"
    ) as log_call:
        with pytest.raises(RuntimeError):
            await llm_client.complete("prompt", caller="test")

    assert log_call.call_args.kwargs["status"] == "error"
