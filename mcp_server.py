"""
Harvest MCP Server — JSON-RPC 2.0 over stdio transport.

Lets MCP-compatible agents (Claude Desktop, Cursor, Windsurf, ...) drive a
running Harvest API:

- generate_schema: JSON schema from a plain-English description
- search_sources: candidate URLs for a query
- extract_data: one-off structured extraction
- deploy_endpoint: deploy an extraction as a refreshed endpoint
- get_results: read a deployed endpoint with its bearer token
- list_endpoints: list deployed endpoints
- health_check: check service health

Usage:
    python mcp_server.py

Configuration for Claude Desktop (claude_desktop_config.json):
    {
        "mcpServers": {
            "harvest": {
                "command": "python",
                "args": ["/path/to/mcp_server.py"],
                "env": {"HARVEST_URL": "http://localhost:8000"}
            }
        }
    }
"""

import json
import os
import sys
from typing import Any, Iterable, Optional, TextIO

import httpx

# Default base URL, override with HARVEST_URL env var
BASE_URL = os.environ.get("HARVEST_URL", "http://localhost:8000")


# ── JSON-RPC framing ─────────────────────────────────────────────────────────
PROTOCOL_VERSION = "2024-11-05"
PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class RpcError(Exception):
    """A JSON-RPC error to report back to the client."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def rpc_result(id_val, result) -> dict:
    return {"jsonrpc": "2.0", "id": id_val, "result": result}


def rpc_error(id_val, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": id_val, "error": {"code": code, "message": message}}


# ── Tool Definitions ─────────────────────────────────────────────────────────
_SCHEMA_PROP = {
    "type": "object",
    "description": 'JSON schema of the data: {"type": "object", "properties": {...}}.',
}

TOOLS = [
    {
        "name": "generate_schema",
        "description": (
            "Turn a plain-English description of the data you need into a JSON schema "
            "suitable for extract_data and deploy_endpoint."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What data to extract, e.g. 'YC W24 companies and founders'."},
            },
            "required": ["query"],
        },
    },
    {
        "name": "search_sources",
        "description": "Search the web for pages likely to contain the data you need.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query."},
                "limit": {"type": "integer", "default": 5, "description": "Max results (1-20)."},
            },
            "required": ["query"],
        },
    },
    {
        "name": "extract_data",
        "description": "Extract structured JSON from one or more URLs using a schema. Nothing is persisted.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "urls": {"type": "array", "items": {"type": "string", "format": "uri"}},
                "prompt": {"type": "string", "description": "Extraction instructions."},
                "schema": _SCHEMA_PROP,
                "firecrawlApiKey": {"type": "string", "description": "Optional Firecrawl key."},
            },
            "required": ["urls", "prompt", "schema"],
        },
    },
    {
        "name": "deploy_endpoint",
        "description": (
            "Deploy an extraction as a live JSON endpoint refreshed on a cron schedule. "
            "Returns the endpoint URL and its bearer API key (shown only once)."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "route": {"type": "string", "description": "Endpoint name, e.g. 'yc-companies'."},
                "query": {"type": "string", "description": "Extraction prompt."},
                "schema": _SCHEMA_PROP,
                "sources": {"type": "array", "items": {"type": "string", "format": "uri"}},
                "firecrawlApiKey": {"type": "string", "description": "Firecrawl key used for refreshes."},
                "updateFrequency": {"type": "string", "default": "0 0 * * *", "description": "5-field cron."},
            },
            "required": ["route", "query", "schema", "sources", "firecrawlApiKey"],
        },
    },
    {
        "name": "get_results",
        "description": "Read the latest data of a deployed endpoint.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "route": {"type": "string"},
                "apiKey": {"type": "string", "description": "Bearer key returned by deploy_endpoint."},
                "includeSchema": {"type": "boolean", "default": False},
            },
            "required": ["route", "apiKey"],
        },
    },
    {
        "name": "list_endpoints",
        "description": "List deployed endpoints with their sources, cadence and status.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "health_check",
        "description": "Check if the Harvest service is running and healthy.",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


# ── Tool Execution ───────────────────────────────────────────────────────────
def _request(method: str, path: str, payload: Optional[dict] = None, headers: Optional[dict] = None,
             params: Optional[dict] = None, timeout: int = 60) -> Any:
    """Call the Harvest API and return its JSON, or an error dict."""
    try:
        resp = httpx.request(
            method, f"{BASE_URL}{path}", json=payload, headers=headers, params=params, timeout=timeout
        )
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPStatusError as e:
        return {"error": f"API error {e.response.status_code}", "detail": e.response.text}
    except Exception as e:
        return {"error": str(e)}


def _missing(args: dict, *names: str) -> Optional[dict]:
    absent = [n for n in names if not args.get(n)]
    if absent:
        return {"error": f"{', '.join(absent)} {'is' if len(absent) == 1 else 'are'} required"}
    return None


def call_generate_schema(args):
    """Execute generate_schema tool."""
    return _missing(args, "query") or _request("POST", "/api/generate-schema", {"query": args["query"]})


def call_search(args):
    """Execute search_sources tool."""
    error = _missing(args, "query")
    if error:
        return error
    payload = {"query": args["query"]}
    if args.get("limit"):
        payload["limit"] = args["limit"]
    return _request("POST", "/api/search", payload)


def call_extract(args):
    """Execute extract_data tool."""
    error = _missing(args, "urls", "prompt", "schema")
    if error:
        return error
    payload = {"urls": args["urls"], "prompt": args["prompt"], "schema": args["schema"]}
    if args.get("firecrawlApiKey"):
        payload["firecrawlApiKey"] = args["firecrawlApiKey"]
    return _request("POST", "/api/extract", payload, timeout=300)


def call_deploy(args):
    """Execute deploy_endpoint tool."""
    error = _missing(args, "route", "query", "schema", "sources", "firecrawlApiKey")
    if error:
        return error
    payload = {
        "key": args["route"],
        "route": args["route"],
        "data": {
            "data": {},
            "metadata": {
                "query": args["query"],
                "schema": args["schema"],
                "sources": args["sources"],
                "firecrawlApiKey": args["firecrawlApiKey"],
                "updateFrequency": args.get("updateFrequency") or "0 0 * * *",
            },
        },
    }
    return _request("POST", "/api/deploy", payload, timeout=300)


def call_results(args):
    """Execute get_results tool."""
    error = _missing(args, "route", "apiKey")
    if error:
        return error
    params = {"schema": "true"} if args.get("includeSchema") else None
    return _request(
        "GET",
        f"/api/results/{args['route']}",
        headers={"Authorization": f"Bearer {args['apiKey']}"},
        params=params,
    )


TOOL_HANDLERS = {
    "generate_schema": call_generate_schema,
    "search_sources": call_search,
    "extract_data": call_extract,
    "deploy_endpoint": call_deploy,
    "get_results": call_results,
    "list_endpoints": lambda _: _request("GET", "/api/routes"),
    "health_check": lambda _: _request("GET", "/health", timeout=10),
}


# ── JSON-RPC methods ─────────────────────────────────────────────────────────
def _initialize(params: dict) -> dict:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {"tools": {"listChanged": False}},
        "serverInfo": {"name": "harvest", "version": "1.0.0"},
    }


def _call_tool(params: dict) -> dict:
    name = params.get("name", "")
    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        raise RpcError(METHOD_NOT_FOUND, f"Unknown tool: {name}")
    result = handler(params.get("arguments") or {})
    failed = isinstance(result, dict) and "error" in result and result.get("success") is not True
    return {"content": [{"type": "text", "text": json.dumps(result, indent=2)}], "isError": failed}


METHODS = {
    "initialize": _initialize,
    "tools/list": lambda _: {"tools": TOOLS},
    "tools/call": _call_tool,
    "ping": lambda _: {},
}


def handle_request(request: dict) -> Optional[dict]:
    """Answer one JSON-RPC request. Notifications get no response (``None``)."""
    method = request.get("method", "")
    id_val = request.get("id")
    if method.startswith("notifications/"):
        return None

    handler = METHODS.get(method)
    if handler is None:
        return rpc_error(id_val, METHOD_NOT_FOUND, f"Method not found: {method}")
    try:
        return rpc_result(id_val, handler(request.get("params") or {}))
    except RpcError as exc:
        return rpc_error(id_val, exc.code, exc.message)


def serve(lines: Iterable[str], out: TextIO) -> None:
    """Read newline-delimited JSON-RPC messages from ``lines`` and answer on ``out``."""
    for line in lines:
        if not line.strip():
            continue
        try:
            response = handle_request(json.loads(line))
        except json.JSONDecodeError:
            response = rpc_error(None, PARSE_ERROR, "Parse error: invalid JSON")
        except Exception as e:
            sys.stderr.write(f"Error: {e}\n")
            response = rpc_error(None, INTERNAL_ERROR, f"Internal error: {e}")
        if response is not None:
            out.write(json.dumps(response) + "\n")
            out.flush()


def main():
    sys.stderr.write(f"Harvest MCP server v1.0.0 started (backend {BASE_URL})\n")
    sys.stderr.flush()
    serve(sys.stdin, sys.stdout)


if __name__ == "__main__":
    main()
