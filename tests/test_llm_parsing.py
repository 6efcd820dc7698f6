"""Tests for completion-output parsing and the Ollama completion service."""
import pytest

from app.services.llm import (
    OllamaLLMService,
    extract_balanced,
    parse_json_response,
    repair_json,
    strip_code_fences,
)
from app.services.results import CallStatus


def test_parses_plain_json():
    assert parse_json_response('[{"title": "A"}]') == (True, [{"title": "A"}])


def test_parses_fenced_json():
    text = '```json\n{"clusters": []}\n```'
    assert parse_json_response(text) == (True, {"clusters": []})


def test_repairs_trailing_commas_and_python_literals():
    ok, value = parse_json_response('{"a": True, "b": None, "c": [1, 2,],}')
    assert ok
    assert value == {"a": True, "b": None, "c": [1, 2]}


def test_finds_json_inside_prose():
    text = 'Here are the gaps you asked for:\n[{"title": "Gap [draft]"}]\nHope this helps!'
    assert parse_json_response(text) == (True, [{"title": "Gap [draft]"}])


def test_outermost_bracket_wins():
    text = 'Result: {"gaps": [{"title": "A"}]} done'
    assert parse_json_response(text) == (True, {"gaps": [{"title": "A"}]})


def test_recovers_truncated_array():
    assert parse_json_response('[{"title": "A"}') == (True, [{"title": "A"}])


def test_gives_up_on_prose():
    assert parse_json_response("No structured output here.") == (False, None)
    assert parse_json_response("   ") == (False, None)


def test_strip_code_fences_without_language():
    assert strip_code_fences("```\n[1]\n```") == "[1]"


def test_repair_json_drops_line_comments_but_keeps_urls():
    fixed = repair_json('{"url": "http://x.org", // note\n"n": 1}')
    assert "// note" not in fixed
    assert "http://x.org" in fixed


def test_extract_balanced_ignores_brackets_in_strings():
    text = 'x {"a": "}", "b": {"c": 1}} y'
    assert extract_balanced(text, "{", "}") == '{"a": "}", "b": {"c": 1}}'
    assert extract_balanced("no braces", "{", "}") == ""


@pytest.mark.asyncio
async def test_complete_fails_cleanly_when_unreachable():
    svc = OllamaLLMService(base_url="http://127.0.0.1:9", timeout=2)
    result = await svc.complete("hello")
    assert result.status == CallStatus.FAILED
    assert not result.usable
    assert result.value is None
    assert result.error


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [["not", "an", "object"], "text", {"response": 42}])
async def test_complete_rejects_unexpected_bodies(ollama_body, body):
    ollama_body(body)
    result = await OllamaLLMService(base_url="http://ollama.test", timeout=2).complete("hello")
    assert result.status == CallStatus.FAILED
    assert result.error == "unexpected JSON body"


@pytest.mark.asyncio
async def test_complete_returns_response_field(ollama_body):
    ollama_body({"response": "Gap 1:\nTitle: Rural students"})
    result = await OllamaLLMService(base_url="http://ollama.test", timeout=2).complete("hello")
    assert result.status == CallStatus.OK
    assert result.value == "Gap 1:\nTitle: Rural students"
