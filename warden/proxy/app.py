"""HTTP surface of the proxy.

Endpoints:
  *    /v1/{provider}/{path}                       - Provider proxy
  GET  /api/conversations/{conversation_id}/interactions - Ledger contents
  GET  /health                                     - Health check (DB connectivity)

Chat endpoints are intercepted; every other provider path is forwarded
untouched apart from removing the routing id.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from warden import providers
from warden.config import PROVIDER_DIALECTS, Settings
from warden.errors import RequestValidationError, UpstreamForwardError
from warden.ledger import InteractionLedger
from warden.proxy.pipeline import ChatInterceptor, RequestContext
from warden.proxy.routing import derive_conversation_id, split_routing_id
from warden.proxy.streaming import create_accumulator, iter_sse_events

logger = logging.getLogger(__name__)

_HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})


def _forward_headers(request: Request, settings: Settings) -> dict[str, str]:
    """Client headers for upstream, auth included, minus hop-by-hop ones."""
    skip = _HOP_BY_HOP | {settings.conversation_header.lower(), "accept-encoding"}
    return {k: v for k, v in request.headers.items() if k.lower() not in skip}


def _response_headers(upstream: httpx.Response, rewritten: bool = False) -> dict[str, str]:
    skip = set(_HOP_BY_HOP)
    if rewritten:
        skip.add("content-encoding")
    return {k: v for k, v in upstream.headers.items() if k.lower() not in skip}


def create_app(
    settings: Settings,
    http_client: httpx.AsyncClient,
    ledger: InteractionLedger,
    interceptor: ChatInterceptor,
    database: Any | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    # ------------------------------------------------------------------
    # Passthrough
    # ------------------------------------------------------------------

    async def send_upstream(upstream_request: httpx.Request) -> httpx.Response:
        try:
            return await http_client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamForwardError(f"Upstream provider unreachable: {e}") from e

    async def passthrough(request: Request, url: str) -> Response:
        upstream_request = http_client.build_request(
            request.method,
            url,
            headers=_forward_headers(request, settings),
            params=request.query_params,
            content=await request.body(),
        )
        try:
            upstream = await send_upstream(upstream_request)
        except UpstreamForwardError as e:
            logger.warning("Forwarding to %s failed: %s", url, e)
            return JSONResponse({"error": str(e)}, status_code=502)

        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=_response_headers(upstream),
            background=BackgroundTask(upstream.aclose),
        )

    # ------------------------------------------------------------------
    # Interception
    # ------------------------------------------------------------------

    async def relay_stream(ctx: RequestContext, upstream: httpx.Response) -> AsyncIterator[str]:
        accumulator = create_accumulator(ctx.dialect)
        try:
            async for event in iter_sse_events(upstream.aiter_lines()):
                for chunk in accumulator.feed(event):
                    yield chunk
        except httpx.HTTPError as e:
            logger.warning("Upstream stream for conversation %s broke off: %s", ctx.conversation_id, e)
            return
        finally:
            await upstream.aclose()

        if accumulator.errored or not accumulator.done:
            # Held tool calls are never released from an incomplete stream
            logger.warning("Upstream stream for conversation %s ended before the message boundary", ctx.conversation_id)
            return

        refusal = await interceptor.review_tool_calls(ctx, accumulator.tool_calls)
        await asyncio.shield(interceptor.record_response(ctx, accumulator.assembled_message(refusal)))
        for chunk in accumulator.finish(refusal):
            yield chunk

    async def intercept(request: Request, provider: str, url: str, routing_id: str | None) -> Response:
        dialect = PROVIDER_DIALECTS[provider]
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        try:
            providers.validate_request(dialect, body)
        except RequestValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        conversation_id = request.headers.get(settings.conversation_header) or derive_conversation_id(
            routing_id, body["messages"], body.get("system")
        )
        ctx = RequestContext(provider=provider, conversation_id=conversation_id, agent_id=routing_id)

        try:
            await asyncio.shield(interceptor.ingest(ctx, body))
            messages = await interceptor.outbound_messages(ctx, body["messages"])
        except Exception:
            logger.exception("Interception failed for conversation %s", conversation_id)
            return JSONResponse(
                {"error": "Request blocked: security evaluation failed"},
                status_code=403,
            )

        upstream_request = http_client.build_request(
            "POST",
            url,
            headers=_forward_headers(request, settings),
            params=request.query_params,
            json={**body, "messages": messages},
        )
        try:
            upstream = await send_upstream(upstream_request)
        except UpstreamForwardError as e:
            logger.warning("Forwarding to %s failed: %s", url, e)
            return JSONResponse({"error": str(e)}, status_code=502)

        if upstream.status_code >= 400:
            # Provider errors go back verbatim and are not recorded
            content = await upstream.aread()
            await upstream.aclose()
            return Response(
                content, status_code=upstream.status_code, headers=_response_headers(upstream, rewritten=True)
            )

        if body.get("stream"):
            return StreamingResponse(
                relay_stream(ctx, upstream),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        try:
            raw = await upstream.aread()
        except httpx.HTTPError as e:
            logger.warning("Upstream response for conversation %s broke off: %s", conversation_id, e)
            return JSONResponse({"error": f"Upstream provider failed: {e}"}, status_code=502)
        finally:
            await upstream.aclose()

        try:
            data = json.loads(raw)
        except ValueError:
            return JSONResponse({"error": "Upstream provider returned invalid JSON"}, status_code=502)

        message = providers.response_message(dialect, data)
        refusal = await interceptor.review_tool_calls(ctx, providers.tool_calls_of(dialect, message))
        if refusal is not None:
            data = providers.refusal_response(dialect, data, refusal)
            message = providers.response_message(dialect, data)
        await asyncio.shield(interceptor.record_response(ctx, message))
        return JSONResponse(data, status_code=upstream.status_code, headers=_response_headers(upstream, rewritten=True))

    async def proxy(request: Request) -> Response:
        """/v1/{provider}/{path} - Forward to the provider, intercepting chat calls."""
        provider = request.path_params["provider"]
        base_url = settings.provider_base_url(provider)
        if base_url is None:
            return JSONResponse({"error": f"Unknown provider: {provider}"}, status_code=404)

        routed = split_routing_id(request.path_params["path"])
        url = f"{base_url}/{routed.upstream_path}"

        if request.method == "POST" and providers.is_chat_path(provider, routed.upstream_path):
            return await intercept(request, provider, url, routed.routing_id)
        return await passthrough(request, url)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def list_interactions(request: Request) -> JSONResponse:
        """GET /api/conversations/{conversation_id}/interactions - Ledger contents."""
        conversation_id = request.path_params["conversation_id"]
        try:
            records = await ledger.list_by_conversation(conversation_id)
        except Exception as e:
            logger.error("Interaction listing error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse({
            "conversation_id": conversation_id,
            "interactions": [r.model_dump(mode="json") for r in records],
            "total": len(records),
        })

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if database is None:
            return JSONResponse({"status": "healthy"})
        try:
            await database.ping()
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    methods = ["GET", "POST", "PUT", "PATCH", "DELETE"]
    routes = [
        Route("/health", health),
        Route("/api/conversations/{conversation_id}/interactions", list_interactions),
        Route("/v1/{provider}/{path:path}", proxy, methods=methods),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
