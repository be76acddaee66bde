"""Event publication, subscription and history endpoints."""
from __future__ import annotations

from aiohttp import web

from event_hub.api.utils import (
    bad_request,
    list_response,
    not_found,
    pagination_params,
    parse_uuid,
    query_params,
    read_json,
)
from event_hub.core.exceptions import NotFoundError, ValidationError
from event_hub.services.dependencies import caller_app_id, get_event_service

routes = web.RouteTableDef()


@routes.post("/api/v1/events")
async def publish_event(request: web.Request):
    body = await read_json(request)
    service = get_event_service(request)
    try:
        event = await service.publish(body, source_app_id=caller_app_id(request))
    except ValidationError as exc:
        raise bad_request(str(exc), exc.errors) from exc
    return web.json_response({"success": True, "data": event.model_dump(mode="json")}, status=201)


@routes.post("/api/v1/events/subscribe")
async def subscribe(request: web.Request):
    body = await read_json(request)
    service = get_event_service(request)
    try:
        subscription = await service.subscribe(body, app_id=caller_app_id(request))
    except ValidationError as exc:
        raise bad_request(str(exc), exc.errors) from exc
    return web.json_response({"success": True, "data": subscription.public_dump()}, status=201)


@routes.delete("/api/v1/events/subscribe/{subscription_id}")
async def unsubscribe(request: web.Request):
    subscription_id = parse_uuid(request.match_info["subscription_id"], "subscription_id")
    service = get_event_service(request)
    existed = await service.unsubscribe(subscription_id)
    message = "Unsubscribed successfully" if existed else "Subscription not found"
    return web.json_response({"success": existed, "message": message})


@routes.get("/api/v1/events/history")
async def event_history(request: web.Request):
    service = get_event_service(request)
    try:
        items, total = await service.history(query_params(request))
    except ValidationError as exc:
        raise bad_request(str(exc), exc.errors) from exc
    return web.json_response(
        list_response([item.model_dump(mode="json") for item in items], total=total)
    )


@routes.get("/api/v1/events/subscriptions")
async def list_subscriptions(request: web.Request):
    raw_app_id = request.rel_url.query.get("app_id")
    app_id = parse_uuid(raw_app_id, "app_id") if raw_app_id else caller_app_id(request)
    if app_id is None:
        raise bad_request("app_id is required")
    limit, offset = pagination_params(request)
    service = get_event_service(request)
    items, total = await service.list_subscriptions(app_id, limit=limit, offset=offset)
    return web.json_response(list_response([item.public_dump() for item in items], total=total))


@routes.get("/api/v1/events/{event_id}")
async def get_event(request: web.Request):
    event_id = parse_uuid(request.match_info["event_id"], "event_id")
    service = get_event_service(request)
    try:
        event = await service.get_event(event_id)
    except NotFoundError as exc:
        raise not_found(str(exc)) from exc
    return web.json_response({"success": True, "data": event.model_dump(mode="json")})


@routes.get("/api/v1/events/{event_id}/deliveries")
async def list_deliveries(request: web.Request):
    event_id = parse_uuid(request.match_info["event_id"], "event_id")
    service = get_event_service(request)
    try:
        records = await service.list_deliveries(event_id)
    except NotFoundError as exc:
        raise not_found(str(exc)) from exc
    return web.json_response(list_response([record.model_dump(mode="json") for record in records]))
