from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, TypeAdapter, ValidationError

from token_gateway.errors import (
    GatewayError,
    MalformedRequestError,
    StoreUnavailableError,
)
from token_gateway.gateway.auth import Authenticator
from token_gateway.pool.admission import Admission, TokenLockRegistry
from token_gateway.pool.models import Credential, resolve_mode
from token_gateway.pool.prober import HealthProber
from token_gateway.pool.registry import CredentialItem, CredentialRegistry
from token_gateway.pool.scheduler import PoolScheduler, SchedulerLimits
from token_gateway.pool.store import InMemoryStateStore, StateStore, build_state_store
from token_gateway.pool.usage_reset import UsageResetScheduler
from token_gateway.settings import Settings, get_settings
from token_gateway.translator.dispatch import ChatDispatcher
from token_gateway.translator.messages import parse_chat_request
from token_gateway.translator.upstream import UpstreamClient

app = FastAPI(
    title="Token Gateway",
    description="OpenAI-compatible chat gateway over a pool of upstream credentials.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

PUBLIC_PATHS = frozenset({"/health"})
MODELS_CREATED = 1708387200
AVAILABLE_MODELS: tuple[tuple[str, str], ...] = (
    ("claude-3.7-agent", "anthropic"),
    ("augment-chat", "augment"),
)

_credential_items = TypeAdapter(list[CredentialItem])


class RemarkUpdate(BaseModel):
    remark: str = ""


@app.middleware("http")
async def prefix_auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    path = request.url.path
    if path in PUBLIC_PATHS:
        return await call_next(request)

    settings: Settings | None = getattr(app.state, "settings", None)
    prefix = settings.normalized_route_prefix if settings is not None else ""
    if prefix:
        if path != prefix and not path.startswith(prefix + "/"):
            return JSONResponse(status_code=404, content={"error": "not found"})
        request.scope["path"] = path[len(prefix) :] or "/"

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


async def _open_state_store(settings: Settings) -> StateStore:
    store = build_state_store(redis_url=settings.redis_url, logger=logger)
    try:
        await store.ping()
    except StoreUnavailableError as exc:
        logger.warning(
            "state_store_redis_unavailable reason=%s fallback=in_memory", str(exc)
        )
        return InMemoryStateStore()
    return store


def _coding_credential(settings: Settings) -> Credential | None:
    if not settings.coding_mode:
        return None
    if not settings.coding_token or not settings.tenant_url:
        logger.warning("coding_mode_ignored reason=coding_token_or_tenant_url_missing")
        return None
    return Credential(token=settings.coding_token, tenant_url=settings.tenant_url)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    if settings.debug:
        logger.setLevel(logging.DEBUG)

    store = await _open_state_store(settings)
    registry = CredentialRegistry(
        store, request_status_ttl_seconds=settings.request_status_ttl_seconds
    )
    try:
        await registry.migrate_remarks()
    except StoreUnavailableError as exc:
        logger.warning("remark_migration_skipped error=%s", str(exc))

    scheduler = PoolScheduler(
        registry,
        limits=SchedulerLimits(
            chat_usage_limit=settings.chat_usage_limit,
            agent_usage_limit=settings.agent_usage_limit,
            min_request_interval_seconds=settings.min_request_interval_seconds,
        ),
    )
    coding_credential = _coding_credential(settings)
    upstream = UpstreamClient.from_settings(settings)
    usage_reset = UsageResetScheduler(
        registry=registry,
        logger=logger,
        enabled=settings.usage_reset_enabled,
    )
    await usage_reset.start()

    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    app.state.state_store = store
    app.state.registry = registry
    app.state.scheduler = scheduler
    app.state.admission = Admission(
        scheduler=scheduler,
        registry=registry,
        locks=TokenLockRegistry(),
        fixed_credential=coding_credential,
    )
    app.state.upstream = upstream
    app.state.dispatcher = ChatDispatcher(
        registry=registry,
        upstream=upstream,
        cooldown_seconds=settings.cooldown_seconds,
    )
    app.state.prober = HealthProber(
        registry=registry,
        upstream=upstream,
        shard_urls=settings.shard_urls,
        timeout_seconds=settings.probe_timeout_seconds,
    )
    app.state.usage_reset = usage_reset
    logger.info(
        (
            "startup complete route_prefix=%s auth_required=%s coding_mode=%s "
            "proxy_enabled=%s store=%s"
        ),
        settings.normalized_route_prefix or "/",
        bool(settings.auth_token),
        coding_credential is not None,
        bool(settings.proxy_url),
        type(store).__name__,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    usage_reset: UsageResetScheduler | None = getattr(app.state, "usage_reset", None)
    if usage_reset is not None:
        await usage_reset.stop()
    upstream: UpstreamClient | None = getattr(app.state, "upstream", None)
    if upstream is not None:
        await upstream.close()
    store: StateStore | None = getattr(app.state, "state_store", None)
    if store is not None:
        try:
            await store.close()
        except StoreUnavailableError as exc:
            logger.warning("state_store_close_failed error=%s", str(exc))
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {
                "id": model_id,
                "object": "model",
                "created": MODELS_CREATED,
                "owned_by": owner,
            }
            for model_id, owner in AVAILABLE_MODELS
        ],
    }


async def _read_json_body(request: Request) -> Any:
    raw = await request.body()
    try:
        return json.loads(raw) if raw else None
    except ValueError as exc:
        raise MalformedRequestError("invalid request body: malformed JSON") from exc


async def _chat_completions(request: Request) -> Response:
    payload = await _read_json_body(request)
    if not isinstance(payload, dict):
        raise MalformedRequestError("invalid request body: expected a JSON object")

    admission: Admission = app.state.admission
    dispatcher: ChatDispatcher = app.state.dispatcher
    ticket = await admission.admit(resolve_mode(str(payload.get("model") or "")))
    try:
        chat_request = parse_chat_request(payload)
    except BaseException:
        await ticket.release()
        raise
    return await dispatcher.dispatch(chat_request, ticket)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _chat_completions(request)


@app.post("/v1/chat")
async def chat(request: Request) -> Response:
    return await _chat_completions(request)


@app.post("/v1")
async def v1_root(request: Request) -> Response:
    return await _chat_completions(request)


@app.post("/api/add/tokens")
async def add_tokens(request: Request) -> dict[str, Any]:
    payload = await _read_json_body(request)
    try:
        items = _credential_items.validate_python(payload)
    except ValidationError as exc:
        raise MalformedRequestError("invalid request body") from exc
    if not items:
        raise MalformedRequestError("token list is empty")
    registry: CredentialRegistry = app.state.registry
    result = await registry.add(items)
    return result.to_dict()


@app.get("/api/tokens")
async def list_tokens(page: int = 1, page_size: int = 0) -> dict[str, Any]:
    registry: CredentialRegistry = app.state.registry
    listing = await registry.list_credentials(page=page, page_size=page_size)
    return listing.to_dict()


@app.delete("/api/token/{token}")
async def delete_token(token: str) -> dict[str, str]:
    registry: CredentialRegistry = app.state.registry
    await registry.delete(token)
    return {"status": "success"}


@app.put("/api/token/{token}/remark")
async def update_token_remark(token: str, request: Request) -> dict[str, str]:
    payload = await _read_json_body(request)
    try:
        update = RemarkUpdate.model_validate(payload)
    except ValidationError as exc:
        raise MalformedRequestError("invalid request body") from exc
    registry: CredentialRegistry = app.state.registry
    await registry.update_remark(token, update.remark)
    return {"status": "success"}


@app.get("/api/check-tokens")
async def check_tokens() -> dict[str, Any]:
    prober: HealthProber = app.state.prober
    summary = await prober.probe_all()
    return summary.to_dict()


@app.post("/api/token/{token}/check")
async def check_token(token: str) -> dict[str, Any]:
    prober: HealthProber = app.state.prober
    result = await prober.probe_and_repair(token)
    return {
        "status": "success",
        "old_tenant_url": result.old_tenant_url,
        "tenant_url": result.tenant_url,
        "updated": result.changed,
    }


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "request_failed error_type=%s status=%d message=%s",
            type(exc).__name__,
            exc.status_code,
            exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def run() -> None:
    import uvicorn

    uvicorn.run("token_gateway.main:app", host="0.0.0.0", port=8000, reload=False)
