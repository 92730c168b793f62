from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from aiohttp import WSMsgType, web

from .calls import CallInProgress, CallRelay
from .config import GatewayConfig
from .conversations import ConversationStore, Forbidden, InvalidRequest, NotFound
from .hub import Connection, Frame, error_frame, make_frame
from .media import URL_PREFIX, MediaStore, UploadTooLarge
from .moderation import BlockList
from .presence import PresenceRegistry
from .routing import Router
from .sessions import Session, SessionStore
from .users import UserDirectory, UsernameTaken

logger = logging.getLogger(__name__)

# Body fields that name the acting user. They may be omitted, but if present
# they must match the identity bound to the socket at session.start.
IDENTITY_FIELDS = ("user_id", "sender_id", "caller_id", "answerer_id", "requester_id", "creator_id", "from")


class Runtime:
    def __init__(
        self,
        *,
        config: GatewayConfig,
        users: UserDirectory,
        sessions: SessionStore,
        presence: PresenceRegistry,
        store: ConversationStore,
        router: Router,
        calls: CallRelay,
        media: MediaStore,
    ) -> None:
        self.config = config
        self.users = users
        self.sessions = sessions
        self.presence = presence
        self.store = store
        self.router = router
        self.calls = calls
        self.media = media


RUNTIME_KEY = web.AppKey("runtime", Runtime)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _error(status: int, code: str, message: str) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _unauthorized() -> web.Response:
    return _error(401, "unauthorized", "invalid session_token")


def _invalid_request(message: str) -> web.Response:
    return _error(400, "invalid_request", message)


def _not_found(message: str = "user not found") -> web.Response:
    return _error(404, "not_found", message)


def _authenticate_request(request: web.Request) -> Session | None:
    runtime = request.app[RUNTIME_KEY]
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    session_token = auth_header[len("Bearer ") :].strip()
    session = runtime.sessions.get_by_session(session_token)
    if session is None or runtime.users.get(session.user_id) is None:
        return None
    return session


async def _json_body(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    return body if isinstance(body, dict) else None


def _login_response(runtime: Runtime, user_id: str) -> web.Response:
    user = runtime.users.get(user_id)
    session = runtime.sessions.create(user_id)
    return web.json_response({"token": session.session_token, "user": user.private_profile()})


async def handle_register(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    try:
        user = runtime.users.register(body.get("username"), body.get("password"))
    except InvalidRequest as exc:
        return _invalid_request(str(exc))
    except UsernameTaken as exc:
        return _error(409, "conflict", str(exc))
    logger.info("registered user %s", user.user_id)
    return _login_response(runtime, user.user_id)


async def handle_login(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json")
    user = runtime.users.authenticate(body.get("username"), body.get("password"))
    if user is None:
        return _error(401, "unauthorized", "invalid username or password")
    return _login_response(runtime, user.user_id)


async def handle_logout(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    runtime.sessions.invalidate(session)
    return web.json_response({"status": "ok"})


async def handle_search(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    query = request.query.get("query", "")
    return web.json_response(runtime.users.search(query, exclude=session.user_id))


async def handle_all_users(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    return web.json_response(runtime.users.all_profiles(exclude=session.user_id))


async def handle_user_profile(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    profile = runtime.users.profile(request.match_info["user_id"])
    if profile is None:
        return _not_found()
    return web.json_response(profile)


def _settings_handler(field: str, apply):
    async def handler(request: web.Request) -> web.Response:
        runtime = request.app[RUNTIME_KEY]
        session = _authenticate_request(request)
        if session is None:
            return _unauthorized()
        body = await _json_body(request)
        if body is None or field not in body:
            return _invalid_request(f"{field} required")
        try:
            user = apply(runtime.users, session.user_id, body[field])
        except InvalidRequest as exc:
            return _invalid_request(str(exc))
        except UsernameTaken as exc:
            return _error(409, "conflict", str(exc))
        if user is None:
            return _not_found()
        return web.json_response({"status": "ok", "user": user.private_profile()})

    return handler


handle_settings_avatar = _settings_handler("avatar", UserDirectory.set_avatar)
handle_settings_username = _settings_handler("username", UserDirectory.rename)
handle_settings_password = _settings_handler("password", UserDirectory.set_password)
handle_settings_theme = _settings_handler("theme", UserDirectory.set_theme)


async def handle_delete_account(request: web.Request) -> web.Response:
    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    runtime.users.delete(session.user_id)
    runtime.sessions.invalidate_user(session.user_id)
    logger.info("deleted user %s", session.user_id)
    return web.json_response({"status": "ok"})


async def handle_upload(request: web.Request) -> web.Response:
    """Accept a multipart upload; a ``type`` field must precede the ``file`` part."""

    runtime = request.app[RUNTIME_KEY]
    session = _authenticate_request(request)
    if session is None:
        return _unauthorized()
    try:
        reader = await request.multipart()
    except Exception:
        return _invalid_request("multipart body required")

    kind: str | None = None
    async for part in reader:
        if part.name == "type":
            kind = (await part.text()).strip() or None
            continue
        if part.name != "file":
            continue
        try:
            stored = await runtime.media.store_stream(kind, part.filename, _part_chunks(part))
        except InvalidRequest as exc:
            return _invalid_request(str(exc))
        except UploadTooLarge as exc:
            return _error(413, "payload_too_large", str(exc))
        return web.json_response(stored.to_dict())
    return _invalid_request("file part required")


async def _part_chunks(part) -> AsyncIterator[bytes]:
    while True:
        chunk = await part.read_chunk()
        if not chunk:
            return
        yield chunk


def create_app(
    config: GatewayConfig | None = None,
    *,
    presence: PresenceRegistry | None = None,
    now_func=None,
    start_call_sweeper: bool = True,
) -> web.Application:
    config = config or GatewayConfig()
    clock = {} if now_func is None else {"now_func": now_func}

    users = UserDirectory(password_iterations=config.password_iterations, **clock)
    sessions = SessionStore(ttl_ms=config.session_ttl_s * 1000, **clock)
    presence = presence or PresenceRegistry()
    store = ConversationStore(BlockList(), **clock)
    router = Router(presence=presence, store=store, users=users)
    calls = CallRelay(
        router,
        ring_timeout_s=config.call_ring_timeout_s,
        sweep_interval_s=config.call_sweep_interval_s,
        **clock,
    )
    media = MediaStore(config.upload_dir, max_bytes=config.max_upload_bytes, **clock)
    media.ensure_dirs()

    app = web.Application(client_max_size=config.max_upload_bytes + 64 * 1024)
    app[RUNTIME_KEY] = Runtime(
        config=config,
        users=users,
        sessions=sessions,
        presence=presence,
        store=store,
        router=router,
        calls=calls,
        media=media,
    )
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/api/register", handle_register)
    app.router.add_post("/api/login", handle_login)
    app.router.add_post("/api/logout", handle_logout)
    app.router.add_get("/api/search", handle_search)
    app.router.add_get("/api/users/all", handle_all_users)
    app.router.add_get("/api/user/{user_id}", handle_user_profile)
    app.router.add_post("/api/settings/avatar", handle_settings_avatar)
    app.router.add_post("/api/settings/username", handle_settings_username)
    app.router.add_post("/api/settings/password", handle_settings_password)
    app.router.add_post("/api/settings/theme", handle_settings_theme)
    app.router.add_delete("/api/account", handle_delete_account)
    app.router.add_post("/api/upload", handle_upload)
    app.router.add_static(URL_PREFIX, media.root)
    app.router.add_get("/v1/ws", websocket_handler)

    async def start_calls(_: web.Application) -> None:
        if start_call_sweeper:
            calls.start_sweeper()

    async def stop_calls(_: web.Application) -> None:
        await calls.stop_sweeper()

    app.on_startup.append(start_calls)
    app.on_cleanup.append(stop_calls)
    return app


def _check_identity(body: dict[str, Any], user_id: str) -> None:
    for key in IDENTITY_FIELDS:
        if key in body and body[key] != user_id:
            raise Forbidden(f"{key} does not match the session identity")


def handle_frame(
    router: Router, calls: CallRelay, user_id: str, frame_type: str, body: dict[str, Any], request_id: str | None
) -> Frame | None:
    """Apply one inbound event for ``user_id`` and return the reply frame, if any.

    Fan-out to other connections happens inside the router before this
    returns, so each event is fully applied before the next one is read.
    """

    def reply(reply_type: str, reply_body: Frame) -> Frame:
        return make_frame(reply_type, reply_body, request_id=request_id)

    _check_identity(body, user_id)

    if frame_type == "get_chats":
        return reply("chats_list", {"chats": router.list_chats(user_id)})
    if frame_type == "get_messages":
        conv_id = body.get("conv_id")
        return reply("messages_history", {"conv_id": conv_id, "messages": router.history(conv_id, user_id)})
    if frame_type == "send_message":
        router.send_message(user_id, body.get("conv_id"), body)
    elif frame_type == "edit_message":
        router.edit_message(user_id, body.get("conv_id"), body.get("msg_id"), body.get("text"))
    elif frame_type == "delete_message":
        router.delete_message(user_id, body.get("conv_id"), body.get("msg_id"))
    elif frame_type == "add_reaction":
        router.add_reaction(user_id, body.get("conv_id"), body.get("msg_id"), body.get("emoji"))
    elif frame_type == "create_group":
        router.create_group(user_id, body.get("name"), body.get("members", []), body.get("avatar"))
    elif frame_type == "update_group":
        router.update_group(user_id, body.get("group_id"), name=body.get("name"), avatar=body.get("avatar"))
    elif frame_type == "add_members":
        router.add_members(user_id, body.get("group_id"), body.get("members"))
    elif frame_type == "remove_member":
        router.remove_member(user_id, body.get("group_id"), body.get("member_id"))
    elif frame_type == "leave_group":
        router.leave_group(user_id, body.get("group_id"))
    elif frame_type == "rename_group":
        router.rename_group(user_id, body.get("group_id"), body.get("name"))
    elif frame_type == "delete_group":
        router.delete_group(user_id, body.get("group_id"))
    elif frame_type == "clear_history":
        router.clear_history(user_id, body.get("conv_id"))
    elif frame_type == "delete_conversation":
        router.delete_conversation(user_id, body.get("conv_id"))
    elif frame_type == "block_user":
        target = body.get("blocked_user_id")
        router.block(user_id, target)
        return reply("user_blocked", {"blocked_user_id": target})
    elif frame_type == "unblock_user":
        target = body.get("blocked_user_id")
        router.unblock(user_id, target)
        return reply("user_unblocked", {"blocked_user_id": target})
    elif frame_type == "check_blocked":
        other = body.get("other_user_id")
        return reply("block_status", {"user_id": other, "is_blocked": router.is_blocked(user_id, other)})
    elif frame_type == "start_call":
        calls.start_call(body.get("conv_id"), user_id, body.get("call_type", "audio"))
    elif frame_type == "answer_call":
        calls.answer_call(body.get("conv_id"), user_id)
    elif frame_type == "end_call":
        calls.end_call(body.get("conv_id"), user_id)
    elif frame_type == "signal":
        calls.relay_signal(body.get("to"), body.get("signal"), user_id, conv_id=body.get("conv_id"))
    else:
        return error_frame("invalid_request", "unknown frame type", request_id=request_id)
    return None


def dispatch_frame(router: Router, calls: CallRelay, user_id: str, frame: dict[str, Any]) -> Frame | None:
    request_id = frame.get("id")
    body = frame.get("body") or {}
    if not isinstance(body, dict):
        return error_frame("invalid_request", "body must be an object", request_id=request_id)
    try:
        return handle_frame(router, calls, user_id, frame.get("t"), body, request_id)
    except InvalidRequest as exc:
        return error_frame("invalid_request", str(exc), request_id=request_id)
    except NotFound as exc:
        return error_frame("not_found", str(exc), request_id=request_id)
    except Forbidden as exc:
        return error_frame("forbidden", str(exc), request_id=request_id)
    except CallInProgress as exc:
        return error_frame("call_in_progress", str(exc), request_id=request_id)


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    config = runtime.config

    ws = web.WebSocketResponse(max_msg_size=config.max_msg_size)
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Frame | None] = asyncio.Queue(maxsize=config.outbound_queue_size)
    connection: Connection | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue_frame(frame: Frame) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("outbound queue full for %s, closing", connection.user_id if connection else "?")
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                if ws.closed:
                    continue
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(config.ping_interval_s)
                if ws.closed:
                    return
                if loop.time() - last_activity >= config.ping_interval_s:
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > config.ping_miss_limit:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
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
            await ws.send_json(_handshake_error("invalid_request", "unsupported version", payload))
            await ws.close()
            return ws
        if payload.get("t") != "session.start":
            await ws.send_json(_handshake_error("invalid_request", "first frame must start session", payload))
            await ws.close()
            return ws

        body = payload.get("body") or {}
        session_token = body.get("session_token") if isinstance(body, dict) else None
        session = runtime.sessions.get_by_session(session_token) if isinstance(session_token, str) else None
        user = runtime.users.get(session.user_id) if session is not None else None
        if user is None:
            await ws.send_json(_handshake_error("unauthorized", "invalid session_token", payload))
            await ws.close()
            return ws

        mark_activity()
        user_id = user.user_id
        await ws.send_json(
            make_frame(
                "session.ready",
                {"user_id": user_id, "profile": user.private_profile()},
                request_id=payload.get("id"),
            )
        )
        connection = Connection(user_id=user_id, callback=enqueue_frame)
        runtime.presence.set_online(user_id, connection)
        logger.info("user %s connected (connection %s)", user_id, connection.connection_id)

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue_frame(error_frame("invalid_request", "malformed json"))
                    continue
                mark_activity()
                if not isinstance(frame, dict):
                    enqueue_frame(error_frame("invalid_request", "frame must be an object"))
                    continue
                if frame.get("v") != 1:
                    enqueue_frame(error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue
                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue_frame({"v": 1, "t": "pong", "id": frame.get("id")})
                    continue
                if frame_type == "pong":
                    continue
                reply = dispatch_frame(runtime.router, runtime.calls, user_id, frame)
                if reply is not None:
                    enqueue_frame(reply)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        if connection is not None:
            departed = runtime.presence.clear(connection)
            if departed is not None:
                runtime.calls.drop_user(departed)
            logger.info("user %s disconnected (connection %s)", connection.user_id, connection.connection_id)
        writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws


def _handshake_error(code: str, message: str, payload: Any) -> Frame:
    request_id = payload.get("id") if isinstance(payload, dict) else None
    return error_frame(code, message, request_id=request_id)
