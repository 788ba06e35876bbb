"""FastAPI application exposing chat, presence and account provisioning."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

import anyio
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_client import Counter, make_asgi_app
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.websockets import WebSocketState

from . import identity, services
from .auth import Principal, get_current_principal, principal_from_token
from .channel import MessageChannel, Subscription
from .config import settings
from .database import init_db
from .errors import HubError, Unauthorized, ValidationError
from .importer import parse_records
from .presence import PresenceTracker
from .provisioning import AccountRequest, ProvisioningPipeline
from .tasks import import_accounts

logger = logging.getLogger(__name__)

SENSITIVE_RATE_LIMIT = settings.sensitive_rate_limit

WS_CLOSE_UNAUTHORIZED = 4001
WS_CLOSE_RESYNC = 4008

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.presence = PresenceTracker()
    app.state.channel = MessageChannel()
    app.state.provisioner = ProvisioningPipeline()
    try:
        await app.state.presence.reconcile()
    except HubError:
        logger.warning("presence reconciliation skipped", exc_info=True)
    yield
    app.state.channel.close()
    app.state.presence.close()


limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.mount("/metrics", make_asgi_app())


@app.exception_handler(HubError)
async def hub_error_handler(request: Request, exc: HubError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


class LoginRequest(BaseModel):
    """Request body for user login."""

    username: str
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    """JWT access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class AccountCreate(BaseModel):
    """Request body for provisioning a single account."""

    username: str = ""
    password: str = ""
    display_name: Optional[str] = None

    def to_request(self) -> AccountRequest:
        return AccountRequest(
            username=self.username, password=self.password, display_name=self.display_name
        )


class AccountCreated(BaseModel):
    identity_id: str
    warnings: List[str] = Field(default_factory=list)


class BulkCreate(BaseModel):
    users: List[AccountCreate]


class BulkResponse(BaseModel):
    """Aggregate result of a bulk provisioning run."""

    created: int
    failed: int
    skipped: int = 0
    errors: List[str]


class AdminSetup(BaseModel):
    username: str = ""
    password: str = ""
    setup_key: str = ""


class MessageCreate(BaseModel):
    content: str


class MessagePublished(BaseModel):
    message_id: int
    created_at: datetime


class MessageItem(BaseModel):
    id: int
    user_id: str
    content: str
    created_at: datetime
    username: Optional[str] = None
    display_name: Optional[str] = None


class PresenceItem(BaseModel):
    user_id: str
    username: str
    display_name: Optional[str] = None
    is_online: bool
    last_seen: datetime


class LeaveRequest(BaseModel):
    handle_id: str


def _tokens(identity_id: str) -> TokenResponse:
    return TokenResponse(
        access_token=identity.create_access_token(identity_id),
        refresh_token=identity.create_refresh_token(identity_id),
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/login", response_model=TokenResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def login(request: Request, payload: LoginRequest):
    if not payload.username.strip() or not payload.password:
        raise ValidationError("Username and password are required")
    identity_id = identity.authenticate(identity.login_for(payload.username), payload.password)
    return _tokens(identity_id)


@app.post("/token/refresh", response_model=TokenResponse)
def refresh(payload: RefreshRequest):
    identity_id = identity.decode_token(payload.refresh_token, "refresh")
    if not identity.identity_exists(identity_id):
        raise Unauthorized("User not found")
    return _tokens(identity_id)


@app.post("/setup/admin", response_model=AccountCreated)
@limiter.limit(SENSITIVE_RATE_LIMIT)
async def setup_admin(request: Request, payload: AdminSetup):
    """Create the first administrator account."""
    outcome = await request.app.state.provisioner.bootstrap_admin(
        payload.username, payload.password, payload.setup_key
    )
    return AccountCreated(identity_id=outcome.identity_id, warnings=outcome.warnings)


@app.post("/admin/users", response_model=AccountCreated)
@limiter.limit(SENSITIVE_RATE_LIMIT)
async def create_user(
    request: Request,
    payload: AccountCreate,
    caller: Principal = Depends(get_current_principal),
):
    """Provision one account (identity, profile and role grant)."""
    outcome = await request.app.state.provisioner.provision(caller.user_id, payload.to_request())
    return AccountCreated(identity_id=outcome.identity_id, warnings=outcome.warnings)


@app.post("/admin/users/bulk", response_model=BulkResponse)
async def bulk_create_users(
    request: Request,
    payload: BulkCreate,
    caller: Principal = Depends(get_current_principal),
):
    """Provision many accounts; individual failures do not stop the batch."""
    result = await request.app.state.provisioner.provision_bulk(
        caller.user_id, [u.to_request() for u in payload.users]
    )
    return BulkResponse(**result.to_dict())


async def _read_import(request: Request) -> List[AccountRequest]:
    body = await request.body()
    records = parse_records(body.decode("utf-8-sig", errors="replace"))
    if not records:
        raise ValidationError("No valid users found in file")
    return records


@app.post("/admin/users/import", response_model=BulkResponse)
async def import_users(request: Request, caller: Principal = Depends(get_current_principal)):
    """Parse an uploaded account file and provision its rows."""
    records = await _read_import(request)
    result = await request.app.state.provisioner.provision_bulk(caller.user_id, records)
    return BulkResponse(**result.to_dict())


@app.post("/admin/users/import/async", status_code=202)
async def import_users_async(request: Request, caller: Principal = Depends(get_current_principal)):
    """Queue an account file for provisioning on the Celery worker."""
    await request.app.state.provisioner.authorize(caller.user_id)
    records = await _read_import(request)
    task = import_accounts.delay(caller.user_id, [asdict(r) for r in records])
    logger.info("queued import task=%s rows=%d", task.id, len(records))
    return {"task_id": task.id, "queued": len(records)}


@app.get("/messages", response_model=List[MessageItem])
async def list_messages(
    request: Request,
    limit: Optional[int] = None,
    caller: Principal = Depends(get_current_principal),
):
    """Return the most recent messages, oldest first."""
    if limit is not None and not 0 < limit <= settings.history_limit:
        raise ValidationError(f"limit must be between 1 and {settings.history_limit}")
    return await request.app.state.channel.history(limit)


@app.post("/messages", response_model=MessagePublished)
async def post_message(
    request: Request,
    payload: MessageCreate,
    caller: Principal = Depends(get_current_principal),
):
    """Store a message and broadcast it to every connected client."""
    message = await request.app.state.channel.publish(caller.user_id, payload.content)
    return MessagePublished(message_id=message.id, created_at=message.created_at)


@app.get("/presence", response_model=List[PresenceItem])
def get_presence(caller: Principal = Depends(get_current_principal)):
    """Point-in-time presence of every user, online users first."""
    return services.list_presence()


@app.post("/presence/leave")
async def leave(
    request: Request,
    payload: LeaveRequest,
    caller: Principal = Depends(get_current_principal),
):
    """Going-away beacon from a closing client."""
    closed = await request.app.state.presence.going_away(caller.user_id, payload.handle_id)
    return {"closed": closed}


async def _forward(websocket: WebSocket, send_lock: asyncio.Lock, sub: Subscription, frame) -> None:
    async for item in sub:
        payload = frame(item)
        if payload is None:
            continue
        async with send_lock:
            await websocket.send_json(payload)


async def _receive(websocket: WebSocket, principal: Principal, handle, send_lock: asyncio.Lock) -> None:
    tracker: PresenceTracker = websocket.app.state.presence
    channel: MessageChannel = websocket.app.state.channel
    while True:
        data = await websocket.receive_json()
        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "leave":
            await tracker.disconnect(handle)
            return
        if kind == "message":
            try:
                await channel.publish(principal.user_id, data.get("content", ""))
            except HubError as exc:
                async with send_lock:
                    await websocket.send_json({"type": "error", **exc.to_dict()})
        elif kind == "ping":
            async with send_lock:
                await websocket.send_json({"type": "pong"})


@app.websocket("/ws")
async def hub_socket(websocket: WebSocket, token: Optional[str] = None):
    """Live chat and presence stream for one client connection."""
    try:
        principal = await asyncio.to_thread(principal_from_token, token)
    except HubError as exc:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=exc.message)
        return

    await websocket.accept()
    tracker: PresenceTracker = websocket.app.state.presence
    channel: MessageChannel = websocket.app.state.channel

    try:
        handle = await tracker.connect(principal.user_id)
    except HubError as exc:
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=exc.message)
        return
    messages = channel.subscribe()
    presence = tracker.subscribe()
    tasks = []
    try:
        history = await channel.history()
        snapshot = await asyncio.to_thread(services.list_presence)
        after_id = history[-1]["id"] if history else 0
        await websocket.send_json(
            jsonable_encoder(
                {
                    "type": "snapshot",
                    "handle_id": handle.handle_id,
                    "messages": history,
                    "presence": snapshot,
                }
            )
        )

        send_lock = asyncio.Lock()
        tasks = [
            asyncio.create_task(_receive(websocket, principal, handle, send_lock)),
            asyncio.create_task(
                _forward(
                    websocket,
                    send_lock,
                    messages,
                    lambda m: None if m.id <= after_id else {"type": "message", "message": m.to_dict()},
                )
            ),
            asyncio.create_task(
                _forward(
                    websocket,
                    send_lock,
                    presence,
                    lambda e: {"type": "presence", "presence": e.to_dict()},
                )
            ),
        ]
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(
                    "hub connection user=%s failed", principal.user_id, exc_info=exc
                )
        if websocket.client_state == WebSocketState.CONNECTED:
            if messages.overflowed or presence.overflowed:
                await websocket.close(code=WS_CLOSE_RESYNC, reason="resync")
            else:
                await websocket.close()
    except WebSocketDisconnect:
        logger.debug("client %s went away during snapshot", principal.user_id)
    finally:
        for task in tasks:
            task.cancel()
        messages.close()
        presence.close()
        # Runs even when the server cancels the connection task.
        with anyio.CancelScope(shield=True):
            await tracker.disconnect(handle)
        logger.info("hub connection closed user=%s handle=%s", principal.user_id, handle.handle_id)
