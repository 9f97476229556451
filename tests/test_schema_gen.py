"""
Tests for Groq-backed schema generation.
"""

import json
from unittest.mock import MagicMock

import pytest

from schema_gen import SchemaGenerationError, generate_schema, parse_schema, strip_fences

SCHEMA = {
    "type": "object",
    "properties": {"company": {"type": "string"}, "founders": {"type": "array"}},
    "required": ["company"],
}


def test_strip_fences():
    assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_fences('  {"a": 1}  ') == '{"a": 1}'


def test_parse_schema_plain():
    assert parse_schema(json.dumps(SCHEMA)) == SCHEMA


def test_parse_schema_fenced_and_wrapped():
    raw = "```json\n" + json.dumps({"schema": SCHEMA}) + "\n```"
    assert parse_schema(raw) == SCHEMA


def test_parse_schema_fills_required():
    schema = parse_schema(json.dumps({"type": "object", "properties": {"title": {"type": "string"}}}))
    assert schema["required"] == ["title"]


@pytest.mark.parametrize(
    "raw",
    ["not json", "[]", '{"type": "object", "properties": {}}', '{"type": "string"}', ""],
)
def test_parse_schema_rejects(raw):
    with pytest.raises(SchemaGenerationError):
        parse_schema(raw)


def _groq_returning(content):
    client = MagicMock()
    client.chat.completions.create.return_value.choices = [MagicMock(message=MagicMock(content=content))]
    return client


@pytest.mark.asyncio
async def test_generate_schema_calls_groq_in_json_mode():
    client = _groq_returning(json.dumps(SCHEMA))

    schema = await generate_schema(client, "YC W24 companies and their founders")

    assert schema == SCHEMA
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert "YC W24 companies" in kwargs["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_generate_schema_bad_output():
    with pytest.raises(SchemaGenerationError):
        await generate_schema(_groq_returning("I cannot help with that."), "anything")
