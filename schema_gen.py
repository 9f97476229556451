"""
Natural-language to JSON schema inference with Groq.
"""

import asyncio
import json
import logging

from groq import Groq

from config import settings
from extraction import InvalidSchemaError, is_valid_json_schema, normalize_schema

logger = logging.getLogger("harvest.schema_gen")

SYSTEM_PROMPT = (
    "You design JSON schemas for web data extraction. "
    "Given a description of the data a user wants, return ONLY a JSON Schema object with "
    '"type": "object", a "properties" map describing each field (use JSON Schema types and '
    'short "description" strings), and a "required" list. Use arrays of objects for lists of '
    "items. No commentary, no markdown fences, just the JSON object."
)


class SchemaGenerationError(Exception):
    """Raised when the model output is not a usable object schema."""


def strip_fences(raw_output: str) -> str:
    """Remove markdown code fences a model may wrap JSON in."""
    raw_output = raw_output.strip()
    if raw_output.startswith("```"):
        raw_output = raw_output.split("\n", 1)[-1]
    if raw_output.endswith("```"):
        raw_output = raw_output.rsplit("```", 1)[0]
    return raw_output.strip()


def parse_schema(raw_output: str) -> dict:
    """Parse model output into a normalized object schema."""
    try:
        schema = json.loads(strip_fences(raw_output))
    except json.JSONDecodeError as exc:
        raise SchemaGenerationError("Model output was not valid JSON") from exc

    # Some models wrap the schema: {"schema": {...}}
    if isinstance(schema, dict) and not is_valid_json_schema(schema) and isinstance(schema.get("schema"), dict):
        schema = schema["schema"]

    if not is_valid_json_schema(schema):
        raise SchemaGenerationError("Model output is not an object schema with properties")
    try:
        return normalize_schema(schema)
    except InvalidSchemaError as exc:
        raise SchemaGenerationError(str(exc)) from exc


async def generate_schema(client: Groq, query: str) -> dict:
    """Ask Groq for a JSON schema describing ``query``."""
    logger.info("Generating schema for query: '%s'", query[:120])

    def _sync_call():
        return client.chat.completions.create(
            model=settings.groq_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"**Data to extract:** {query}"},
            ],
            temperature=0.1,
            max_tokens=settings.groq_max_output_tokens,
            response_format={"type": "json_object"},
        )

    chat = await asyncio.to_thread(_sync_call)
    raw_output = chat.choices[0].message.content or ""
    schema = parse_schema(raw_output)
    logger.info("Generated schema with %d properties", len(schema["properties"]))
    return schema
