from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from aiohttp import WSMsgType, web

from .accounts import AccountService
from .blobs import BlobLimits, BlobStore, LocalBlobStore
from .channel import Connection
from .config import GatewayConfig
from .delivery import DeliveryEngine
from .errors import AuthError, DuetError, NotFound, PushFailed, ValidationError
from .identities import Identity, IdentityStore, InMemoryIdentityStore, SQLiteIdentityStore
from .logging import get_logger
from .pairing import ConversationPairing
from .presence import PresenceRegistry
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteMessageStore
from .store import InMemoryMessageStore, MessageKind, MessageStore
from .tokens import InMemoryTokenStore, SQLiteTokenStore, TokenStore


logger = get_logger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        messages: MessageStore,
        identities: IdentityStore,
        tokens: TokenStore,
        blobs: BlobStore,
        presence: PresenceRegistry,
        pairing: ConversationPairing,
        accounts: AccountService,
        delivery: DeliveryEngine,
        backend: SQLiteBackend | None = None,
    ) -> None:
        self.config = config
        self.messages = messages
        self.identities = identities
        self.tokens = tokens
        self.blobs = blobs
        self.presence = presence
        self.pairing = pairing
        self.accounts = accounts
        self.delivery = delivery
        self.backend = backend


def build_runtime(config: GatewayConfig, db_path: str | None = None) -> Runtime:
    """Wire the services once; ``db_path`` selects the SQLite stores."""
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        messages: MessageStore = SQLiteMessageStore(backend)
        identities: IdentityStore = SQLiteIdentityStore(backend)
        tokens: TokenStore = SQLiteTokenStore(backend, ttl_ms=config.token_ttl_ms)
    else:
        messages = InMemoryMessageStore()
        identities = InMemoryIdentityStore()
        tokens = InMemoryTokenStore(ttl_ms=config.token_ttl_ms)

    blobs = LocalBlobStore(
        config.uploads_dir,
        config.public_base_url,
        BlobLimits(
            max_bytes={
                "image": config.image_max_bytes,
                "video": config.video_max_bytes,
                "avatar": config.avatar_max_bytes,
            }
        ),
    )
    pairing = ConversationPairing(identities)
    presence = PresenceRegistry(pairing.counterpart_id)
    accounts = AccountService(
        identities,
        pairing,
        tokens,
        blobs,
        presence,
        max_identities=config.max_identities,
        min_password_length=config.min_password_length,
    )
    delivery = DeliveryEngine(
        messages,
        pairing,
        presence,
        default_page_size=config.default_page_size,
        max_page_size=config.max_page_size,
    )
    return Runtime(
        config=config,
        messages=messages,
        identities=identities,
        tokens=tokens,
        blobs=blobs,
        presence=presence,
        pairing=pairing,
        accounts=accounts,
        delivery=delivery,
        backend=backend,
    )


def _error_response(exc: DuetError) -> web.Response:
    return web.json_response(exc.to_dict(), status=exc.status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except DuetError as exc:
        return _error_response(exc)
    except web.HTTPException:
        raise
    except Exception as exc:
        logger.exception("unhandled_request_error", path=request.path, method=request.method)
        body = {"code": "internal", "message": "internal error"}
        runtime: Runtime = request.app["runtime"]
        if runtime.config.expose_errors:
            body["detail"] = repr(exc)
        return web.json_response(body, status=500)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _bearer_token(request: web.Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    return auth_header[len("Bearer ") :].strip() or None


def _authenticate_request(request: web.Request) -> Identity:
    runtime: Runtime = request.app["runtime"]
    return runtime.accounts.authenticate(_bearer_token(request))


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValidationError("malformed json")
    if not isinstance(body, dict):
        raise ValidationError("json body must be an object")
    return body


async def _read_upload(request: web.Request, field_names: Iterable[str]) -> tuple[bytes, str]:
    accepted = set(field_names)
    reader = await request.multipart()
    async for part in reader:
        if part.name in accepted and part.filename:
            data = await part.read(decode=False)
            return bytes(data), part.filename
    raise ValidationError("no file provided")


def _parse_message_id(request: web.Request) -> int:
    raw = request.match_info["message_id"]
    try:
        message_id = int(raw)
    except ValueError:
        raise NotFound("message not found")
    if message_id < 1:
        raise NotFound("message not found")
    return message_id


def _parse_positive_query(request: web.Request, name: str, default: int | None) -> int | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")
    if value < 1:
        raise ValidationError(f"{name} must be at least 1")
    return value


def _parse_bool(value: Any, name: str) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, str) and value.lower() in {"true", "1"}:
        return True
    if isinstance(value, str) and value.lower() in {"false", "0", ""}:
        return False
    raise ValidationError(f"{name} must be a boolean")


def _user_payload(identity: Identity, partner: Identity | None = None) -> dict[str, Any]:
    return {
        "user": identity.to_public_dict(),
        "partner": partner.to_public_dict() if partner is not None else None,
    }


async def handle_register(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    identity, issued = runtime.accounts.register(body.get("username"), body.get("password"), body.get("display_name"))
    return web.json_response({"user": identity.to_public_dict(), "token": issued.token}, status=201)


async def handle_login(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_json(request)
    identity, issued = runtime.accounts.login(body.get("username"), body.get("password"))
    return web.json_response({"user": identity.to_public_dict(), "token": issued.token})


async def handle_change_password(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    body = await _read_json(request)
    runtime.accounts.change_password(identity.identity_id, body.get("current_password"), body.get("new_password"))
    return web.json_response({"status": "ok"})


async def handle_me(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    identity, partner = runtime.accounts.me(identity.identity_id)
    return web.json_response(_user_payload(identity, partner))


async def handle_link_partner(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    body = await _read_json(request)
    partner_username = body.get("partner_username")
    if not isinstance(partner_username, str):
        raise ValidationError("partner username is required")
    identity, partner = runtime.pairing.link_by_username(identity.identity_id, partner_username.strip())
    return web.json_response(_user_payload(identity, partner))


async def handle_update_profile(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    body = await _read_json(request)
    identity = runtime.accounts.update_profile(identity.identity_id, body.get("display_name"), body.get("bio"))
    return web.json_response({"user": identity.to_public_dict()})


async def handle_update_profile_picture(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    data, filename = await _read_upload(request, ("file", "profile_picture"))
    identity = runtime.accounts.update_avatar(identity.identity_id, data, filename)
    return web.json_response({"user": identity.to_public_dict()})


async def handle_partner(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    _, partner = runtime.accounts.me(identity.identity_id)
    if partner is None:
        raise NotFound("no partner found")
    return web.json_response({"partner": partner.to_public_dict()})


async def handle_status(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    target_id = request.match_info["identity_id"]
    if target_id not in {identity.identity_id, identity.counterpart_id}:
        raise NotFound("identity not found")
    return web.json_response(runtime.accounts.status(target_id))


async def handle_send_text(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    body = await _read_json(request)
    message = await runtime.delivery.send(identity.identity_id, kind=MessageKind.TEXT, content=body.get("content"))
    return web.json_response({"message": message.to_api_dict()}, status=201)


def _media_handler(kind: MessageKind) -> Handler:
    async def handle_send_media(request: web.Request) -> web.Response:
        runtime: Runtime = request.app["runtime"]
        identity = _authenticate_request(request)
        content = None
        if request.content_type.startswith("multipart/"):
            data, filename = await _read_upload(request, ("file", kind.value))
            media_url = runtime.blobs.store(data, kind.value, filename)
        else:
            body = await _read_json(request)
            media_url = body.get("media_url")
            content = body.get("content")
        message = await runtime.delivery.send(identity.identity_id, kind=kind, content=content, media_url=media_url)
        return web.json_response({"message": message.to_api_dict()}, status=201)

    return handle_send_media


async def handle_list_messages(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    page = _parse_positive_query(request, "page", 1)
    limit = _parse_positive_query(request, "limit", None)
    result = await runtime.delivery.fetch_history(identity.identity_id, page=page, limit=limit)
    return web.json_response(
        {
            "messages": [message.to_api_dict() for message in result.messages],
            "pagination": result.pagination_dict(),
        }
    )


async def handle_mark_seen(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    message = await runtime.delivery.mark_seen(identity.identity_id, _parse_message_id(request))
    return web.json_response({"message": message.to_api_dict()})


async def handle_delete_message(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    for_partner = _parse_bool(request.query.get("delete_for_partner"), "delete_for_partner")
    message = await runtime.delivery.delete(identity.identity_id, _parse_message_id(request), for_partner)
    return web.json_response({"message": message.to_api_dict()})


async def handle_unread_count(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    identity = _authenticate_request(request)
    return web.json_response({"count": runtime.delivery.unread_count(identity.identity_id)})


def create_app(
    config: GatewayConfig | None = None,
    *,
    db_path: str | None = None,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    config = config or GatewayConfig()
    runtime = build_runtime(config, db_path)

    app = web.Application(
        middlewares=[error_middleware],
        client_max_size=max(config.image_max_bytes, config.video_max_bytes, config.avatar_max_bytes) + 1_048_576,
    )
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/api/auth/register", handle_register)
    app.router.add_post("/api/auth/login", handle_login)
    app.router.add_post("/api/auth/change-password", handle_change_password)
    app.router.add_get("/api/auth/me", handle_me)
    app.router.add_post("/api/auth/link-partner", handle_link_partner)
    app.router.add_put("/api/users/profile", handle_update_profile)
    app.router.add_put("/api/users/profile/picture", handle_update_profile_picture)
    app.router.add_get("/api/users/partner", handle_partner)
    app.router.add_get("/api/users/status/{identity_id}", handle_status)
    app.router.add_get("/api/messages", handle_list_messages)
    app.router.add_post("/api/messages", handle_send_text)
    app.router.add_post("/api/messages/image", _media_handler(MessageKind.IMAGE))
    app.router.add_post("/api/messages/video", _media_handler(MessageKind.VIDEO))
    app.router.add_get("/api/messages/unread/count", handle_unread_count)
    app.router.add_put("/api/messages/{message_id}/seen", handle_mark_seen)
    app.router.add_delete("/api/messages/{message_id}", handle_delete_message)
    app.router.add_get("/api/ws", websocket_handler)

    uploads_dir = Path(config.uploads_dir)
    uploads_dir.mkdir(parents=True, exist_ok=True)
    app.router.add_static("/uploads", uploads_dir)

    if runtime.backend is not None:
        backend = runtime.backend

        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _frame_message_id(body: dict) -> int:
    message_id = body.get("message_id")
    if isinstance(message_id, bool) or not isinstance(message_id, int):
        raise ValidationError("message_id is required")
    return message_id


async def _push_error(connection: Connection, payload: dict[str, Any], request_id: Any = None) -> bool:
    try:
        await connection.push("error", payload, request_id=request_id)
    except PushFailed as exc:
        logger.warning("error_frame_push_failed", identity_id=connection.identity_id, error=str(exc))
        return False
    return True


async def _dispatch_frame(runtime: Runtime, connection: Connection, frame_type: Any, body: dict, request_id: Any) -> None:
    identity_id = connection.identity_id
    if frame_type == "ping":
        await connection.push("pong", {}, request_id=request_id)
    elif frame_type == "pong":
        return
    elif frame_type == "send-message":
        await runtime.delivery.send(
            identity_id,
            kind=body.get("kind") or MessageKind.TEXT,
            content=body.get("content"),
            media_url=body.get("media_url"),
        )
    elif frame_type == "typing-start":
        await runtime.delivery.typing(identity_id, True)
    elif frame_type == "typing-stop":
        await runtime.delivery.typing(identity_id, False)
    elif frame_type == "delete-message":
        message_id = _frame_message_id(body)
        for_partner = _parse_bool(body.get("delete_for_partner"), "delete_for_partner")
        await runtime.delivery.delete(identity_id, message_id, for_partner)
    elif frame_type == "mark-seen":
        message_id = _frame_message_id(body)
        await runtime.delivery.mark_seen(identity_id, message_id)
    else:
        raise ValidationError("unknown frame type")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_running_loop().time()
    missed_heartbeats = 0
    connection: Connection | None = None

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_running_loop().time()
        missed_heartbeats = 0

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_running_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return
        except ConnectionError:
            return

    async def close_connection(reason: str) -> None:
        await ws.close(code=4000, message=reason.encode("utf-8"))

    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except Exception:
            await ws.close(code=1002, message=b"invalid json")
            return ws
        if not isinstance(payload, dict) or payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version"))
            await ws.close()
            return ws
        if payload.get("t") != "session.start":
            await ws.send_json(
                _error_frame("invalid_request", "first frame must start session", request_id=payload.get("id"))
            )
            await ws.close()
            return ws

        body = payload.get("body") or {}
        token = body.get("token") if isinstance(body, dict) else None
        if not isinstance(body, dict) or not (token is None or isinstance(token, str)):
            await ws.send_json(
                _error_frame("invalid_request", "session.start needs a token string", request_id=payload.get("id"))
            )
            await ws.close()
            return ws
        try:
            identity = runtime.accounts.authenticate(token)
        except AuthError as exc:
            await ws.send_json(_error_frame(exc.code, exc.message, request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        identity_id = identity.identity_id
        connection = Connection(identity_id=identity_id, send=ws.send_json, close_func=close_connection)
        partner = runtime.pairing.resolve_counterpart(identity_id)
        await ws.send_json(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {
                    "user": identity.to_public_dict(),
                    "partner": partner.to_public_dict() if partner is not None else None,
                    "partner_online": partner is not None and runtime.presence.is_online(partner.identity_id),
                },
            }
        )
        logger.info("channel_connected", identity_id=identity_id, connection_id=connection.connection_id)
        superseded = await runtime.presence.register(identity_id, connection)
        if superseded is not None:
            await superseded.close("superseded")

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    if not await _push_error(connection, {"code": "invalid_request", "message": "malformed json"}):
                        break
                    continue

                mark_activity()
                if not isinstance(frame, dict) or frame.get("v") != 1:
                    if not await _push_error(connection, {"code": "invalid_request", "message": "unsupported version"}):
                        break
                    continue

                request_id = frame.get("id")
                frame_body = frame.get("body") or {}
                try:
                    if not isinstance(frame_body, dict):
                        raise ValidationError("body must be an object")
                    await _dispatch_frame(runtime, connection, frame.get("t"), frame_body, request_id)
                except DuetError as exc:
                    if not await _push_error(connection, exc.to_dict(), request_id):
                        break
                except Exception:
                    logger.exception("unhandled_frame_error", identity_id=identity_id, frame_type=frame.get("t"))
                    if not await _push_error(connection, {"code": "internal", "message": "internal error"}, request_id):
                        break
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        if connection is not None:
            connection.mark_closed()
            await runtime.presence.unregister(connection.identity_id, connection)
            runtime.accounts.touch(connection.identity_id)
            logger.info(
                "channel_disconnected",
                identity_id=connection.identity_id,
                connection_id=connection.connection_id,
            )
        await asyncio.gather(heartbeat_task, return_exceptions=True)

    return ws
