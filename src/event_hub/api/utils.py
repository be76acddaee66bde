"""Helper utilities for API handlers."""
from __future__ import annotations

import json
from typing import Any
from uuid import UUID

from aiohttp import web


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def strict_loads(text: str) -> Any:
    """``json.loads`` without the NaN and Infinity extensions."""
    return json.loads(text, parse_constant=_reject_constant)


def error_body(message: str, details: list[dict[str, Any]] | None = None) -> str:
    body: dict[str, Any] = {"success": False, "error": message}
    if details:
        body["details"] = details
    return json.dumps(body, default=str)


def bad_request(message: str, details: list[dict[str, Any]] | None = None) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(text=error_body(message, details), content_type="application/json")


def not_found(message: str) -> web.HTTPNotFound:
    return web.HTTPNotFound(text=error_body(message), content_type="application/json")


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse JSON body from request, raising HTTPBadRequest on invalid input."""
    try:
        data = await request.json(loads=strict_loads)
    except Exception as exc:
        raise bad_request("Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise bad_request("JSON body must be an object")
    return data


def parse_uuid(value: str, label: str) -> UUID:
    try:
        uuid_str = value if isinstance(value, str) else str(value)
        return UUID(uuid_str)
    except (ValueError, TypeError) as exc:
        raise bad_request(f"Invalid {label}") from exc


def query_params(request: web.Request) -> dict[str, str]:
    """Query string as a plain dict, without empty values."""
    return {key: value for key, value in request.rel_url.query.items() if value != ""}


def pagination_params(
    request: web.Request,
    *,
    default_limit: int = 50,
    max_limit: int = 100,
) -> tuple[int, int]:
    query = request.rel_url.query
    try:
        limit = int(query.get("limit", str(default_limit)))
        offset = int(query.get("offset", "0"))
    except ValueError as exc:
        raise bad_request("limit and offset must be integers") from exc
    if limit <= 0:
        limit = default_limit
    limit = min(limit, max_limit)
    if offset < 0:
        offset = 0
    return limit, offset


def list_response(items: list[Any], *, total: int | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"success": True, "data": items, "count": len(items)}
    if total is not None:
        payload["total"] = total
    return payload
