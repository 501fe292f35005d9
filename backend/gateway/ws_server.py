"""WebSocket gateway — device sessions and command relay.

Handles device connections, the auth handshake, inbound message routing,
heartbeat tracking, and the outward send operations that relay commands to a
device and wait for its message-result.

Protocol per connection:
  1. Device connects (CONNECTING); gateway pings every heartbeat interval
  2. Device sends AUTH with its API key
  3. Gateway validates the key, registers a session, replies AUTH_SUCCESS
  4. Device reports STATUS (logged in + ready → ACTIVE) and HEARTBEATs
  5. Gateway sends SEND_* commands; device answers with MESSAGE_RESULT

All state lives on a DeviceGateway instance and is touched from one event
loop. Handlers never await between reading and mutating registry state; the
only suspension points are credential validation and media fetching, and
both re-check the world when they resume.
"""
import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from config.settings import Settings, get_settings
from core.exceptions import (
    ConnectionLostError,
    GatewayError,
    GatewayShutdownError,
    NoActiveDeviceError,
    SessionLimitError,
)
from gateway import contracts, protocol
from gateway.protocol import ParseFailure
from gateway.transport import Transport, WebSocketTransport
from media.fetcher import MediaFetcher, MediaResolver
from observability.audit_log import log_audit_event
from observability.redaction import sanitize_api_key
from presence.correlator import RequestCorrelator
from presence.heartbeat import LivenessSweeper
from presence.registry import DeviceRegistry
from presence.rules import get_heartbeat_interval_s, get_heartbeat_timeout_ms, get_request_timeout_s
from schemas.audit import AuditEventType
from schemas.session import DeviceSession, SessionInfo, now_ms
from schemas.ws_messages import (
    AuthMessage,
    CommandKind,
    HeartbeatMessage,
    MessageResult,
    MessageResultMessage,
    StatusMessage,
)

logger = logging.getLogger(__name__)

ApiKeyValidator = Callable[[str], Awaitable[Any]]
EventHook = Callable[[Dict[str, Any]], Any]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """One transport, authenticated or not."""
    transport: Transport
    ip: str = "unknown"
    state: ConnectionState = ConnectionState.CONNECTING
    session_id: Optional[str] = None
    ping_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED


def _is_valid_key_result(result: Any) -> bool:
    """Accept bool, {"valid": ...} or an object with a ``valid`` attribute."""
    if isinstance(result, bool):
        return result
    if isinstance(result, dict):
        return result.get("valid") is True
    return getattr(result, "valid", False) is True


class DeviceGateway:
    """Session broker and request correlator for device connections."""

    def __init__(
        self,
        validate_api_key: ApiKeyValidator,
        settings: Optional[Settings] = None,
        media_resolver: Optional[MediaResolver] = None,
        on_message_log: Optional[EventHook] = None,
        on_error: Optional[EventHook] = None,
        clock: Callable[[], float] = now_ms,
    ):
        if not callable(validate_api_key):
            raise TypeError("validate_api_key callback is required")

        self.settings = settings or get_settings()
        self._validate_api_key = validate_api_key
        self._on_message_log = on_message_log
        self._on_error = on_error
        self._clock = clock

        self.registry = DeviceRegistry(
            max_sessions_per_key=self.settings.MAX_SESSIONS_PER_KEY,
            strategy=self.settings.DEVICE_SELECTION_STRATEGY,
            clock=clock,
        )
        self.correlator = RequestCorrelator(self.registry)
        self.sweeper = LivenessSweeper(
            self.registry,
            interval_s=get_heartbeat_interval_s(self.settings),
            timeout_ms=get_heartbeat_timeout_ms(self.settings),
            on_stale=self._evict_stale,
            clock=clock,
        )
        self.media_resolver = media_resolver or MediaFetcher(
            max_bytes=self.settings.MEDIA_MAX_BYTES,
            timeout_s=self.settings.MEDIA_FETCH_TIMEOUT_S,
        )

        self._connections: Set[Connection] = set()
        self._by_session: Dict[str, Connection] = {}
        self._started_at: Optional[float] = None

    # =====================================================
    #  Lifecycle
    # =====================================================

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    async def start(self) -> None:
        if self.is_running:
            raise GatewayError("Gateway is already running", code="ALREADY_RUNNING")
        self.sweeper.start()
        self._started_at = self._clock()
        logger.info(
            "Gateway started: strategy=%s max_sessions=%d request_timeout=%.1fs",
            self.settings.DEVICE_SELECTION_STRATEGY,
            self.settings.MAX_SESSIONS_PER_KEY,
            get_request_timeout_s(self.settings),
        )

    async def stop(self) -> None:
        if not self.is_running:
            return
        await self.sweeper.stop()

        dropped = self.registry.clear(GatewayShutdownError)
        for conn in list(self._connections):
            self._detach(conn)
            await conn.transport.close(contracts.CLOSE_NORMAL, "Server shutting down")

        self._started_at = None
        logger.info("Gateway stopped: sessions_dropped=%d", dropped)

    # =====================================================
    #  Connections
    # =====================================================

    def open_connection(self, transport: Transport, ip: str = "unknown") -> Connection:
        conn = Connection(transport=transport, ip=ip)
        self._connections.add(conn)
        conn.ping_task = asyncio.get_running_loop().create_task(self._ping_loop(conn))
        logger.info("New WS connection from %s", ip)
        return conn

    async def _ping_loop(self, conn: Connection) -> None:
        interval = get_heartbeat_interval_s(self.settings)
        while conn.state is not ConnectionState.CLOSED:
            await asyncio.sleep(interval)
            if not conn.transport.is_open:
                continue
            try:
                await conn.transport.send_text(protocol.create_ping_command())
            except Exception as e:
                logger.debug("Ping failed: session=%s error=%s", conn.session_id, str(e))

    def _detach(self, conn: Connection) -> Optional[str]:
        """Mark the connection closed and stop its ping. Returns its session id."""
        if conn.state is ConnectionState.CLOSED:
            return None
        conn.state = ConnectionState.CLOSED
        if conn.ping_task is not None:
            conn.ping_task.cancel()
            conn.ping_task = None
        self._connections.discard(conn)
        session_id = conn.session_id
        if session_id:
            self._by_session.pop(session_id, None)
        return session_id

    def close_connection(self, conn: Connection) -> None:
        """Transport closed (either side). Idempotent."""
        session_id = self._detach(conn)
        if session_id and self.registry.unregister(session_id):
            logger.info("WS disconnected: session=%s", session_id)
            log_audit_event(AuditEventType.SESSION_TERMINATED, session_id=session_id)

    async def _terminate(self, conn: Connection, code: int, reason: str) -> None:
        await conn.transport.close(code, reason)
        self.close_connection(conn)

    async def _evict_stale(self, session: DeviceSession) -> None:
        log_audit_event(
            AuditEventType.HEARTBEAT_TIMEOUT,
            session_id=session.session_id,
            credential=session.credential,
        )
        conn = self._by_session.get(session.session_id)
        if conn is not None:
            self._detach(conn)
        await session.transport.close(contracts.CLOSE_NORMAL, "Heartbeat timeout")

    # =====================================================
    #  Inbound
    # =====================================================

    async def handle_message(self, conn: Connection, raw) -> None:
        """Parse one inbound frame and route it. Never raises."""
        try:
            envelope = protocol.parse_envelope(raw)
            if isinstance(envelope, ParseFailure):
                logger.warning(
                    "Rejected inbound message: session=%s code=%s reason=%s",
                    conn.session_id, envelope.code, envelope.message,
                )
                await self._send_error(conn, envelope.code, envelope.message)
                return

            if isinstance(envelope, AuthMessage):
                await self._handle_auth(conn, envelope)
                return

            if not conn.authenticated:
                await self._send_error(conn, contracts.NOT_AUTHENTICATED, "Not authenticated")
                return

            if isinstance(envelope, StatusMessage):
                self._handle_status(conn, envelope)
            elif isinstance(envelope, HeartbeatMessage):
                self.registry.touch_heartbeat(conn.session_id)
            elif isinstance(envelope, MessageResultMessage):
                self._handle_message_result(conn, envelope)
        except Exception as e:
            await self.report_error("MESSAGE_HANDLER_ERROR", "Error handling message", e, session_id=conn.session_id)

    async def _handle_auth(self, conn: Connection, msg: AuthMessage) -> None:
        if conn.state is not ConnectionState.CONNECTING:
            logger.warning("Duplicate AUTH ignored: session=%s state=%s", conn.session_id, conn.state.value)
            return

        key = sanitize_api_key(msg.api_key)
        try:
            result = await self._validate_api_key(msg.api_key)
        except Exception as e:
            await self.report_error("AUTH_ERROR", "Error during authentication", e)
            result = None

        # The device may have disconnected while validation was pending
        if conn.state is not ConnectionState.CONNECTING or not conn.transport.is_open:
            logger.info("Connection closed during auth: ip=%s key=%s", conn.ip, key)
            return

        if not _is_valid_key_result(result):
            log_audit_event(AuditEventType.AUTH_FAILURE, credential=msg.api_key, details={"ip": conn.ip})
            await self._send_error(conn, contracts.AUTHENTICATION_FAILED, "Invalid API key")
            await self._terminate(conn, contracts.CLOSE_POLICY_VIOLATION, "Authentication failed")
            return

        try:
            session = self.registry.register(
                msg.api_key,
                conn.transport,
                ip=conn.ip,
                extension_version=msg.extension_version,
                browser=msg.browser,
            )
        except SessionLimitError as e:
            log_audit_event(AuditEventType.SESSION_REJECTED, credential=msg.api_key, details={"reason": e.code})
            await self._send_error(conn, contracts.MAX_SESSIONS_EXCEEDED, e.message)
            await self._terminate(conn, contracts.CLOSE_POLICY_VIOLATION, "Max sessions exceeded")
            return

        conn.session_id = session.session_id
        conn.state = ConnectionState.AUTHENTICATED
        self._by_session[session.session_id] = conn

        log_audit_event(AuditEventType.AUTH_SUCCESS, session_id=session.session_id, credential=msg.api_key)
        logger.info("WS authenticated: session=%s key=%s ip=%s", session.session_id, key, conn.ip)
        await conn.transport.send_text(protocol.create_auth_success(session.session_id))

    def _handle_status(self, conn: Connection, msg: StatusMessage) -> None:
        self.registry.set_active(conn.session_id, msg.whatsapp_logged_in, msg.ready)
        logger.info(
            "Session status: session=%s logged_in=%s ready=%s",
            conn.session_id, msg.whatsapp_logged_in, msg.ready,
        )

    def _handle_message_result(self, conn: Connection, msg: MessageResultMessage) -> None:
        result = MessageResult(
            request_id=msg.request_id,
            success=msg.success,
            error=msg.error,
            timestamp=msg.timestamp,
        )
        if not self.correlator.resolve(conn.session_id, msg.request_id, result):
            logger.info(
                "Late or unknown message-result: session=%s request=%s",
                conn.session_id, msg.request_id,
            )

    async def _send_error(self, conn: Connection, code: str, message: str) -> None:
        if conn.transport.is_open:
            await conn.transport.send_text(protocol.create_error(code, message))

    # =====================================================
    #  Outbound
    # =====================================================

    async def send_message(self, credential: str, data: Any) -> MessageResult:
        req = protocol.validate_send_message_data(data)
        return await self._dispatch(
            credential, CommandKind.MESSAGE, req.phone_number,
            lambda request_id: protocol.create_send_message_command(request_id, req.phone_number, req.message),
        )

    async def send_image(self, credential: str, data: Any) -> MessageResult:
        req = protocol.validate_send_image_data(data)
        data_url = req.image_data_url or await self.media_resolver.resolve(req.image_url, CommandKind.IMAGE)
        return await self._dispatch(
            credential, CommandKind.IMAGE, req.phone_number,
            lambda request_id: protocol.create_send_image_command(request_id, req.phone_number, data_url, req.caption),
        )

    async def send_video(self, credential: str, data: Any) -> MessageResult:
        req = protocol.validate_send_video_data(data)
        data_url = req.video_data_url or await self.media_resolver.resolve(req.video_url, CommandKind.VIDEO)
        return await self._dispatch(
            credential, CommandKind.VIDEO, req.phone_number,
            lambda request_id: protocol.create_send_video_command(request_id, req.phone_number, data_url, req.caption),
        )

    async def send_document(self, credential: str, data: Any) -> MessageResult:
        req = protocol.validate_send_document_data(data)
        data_url = req.document_data_url or await self.media_resolver.resolve(req.document_url, CommandKind.DOCUMENT)
        return await self._dispatch(
            credential, CommandKind.DOCUMENT, req.phone_number,
            lambda request_id: protocol.create_send_document_command(
                request_id, req.phone_number, data_url, req.document_name, req.caption,
            ),
        )

    async def _dispatch(
        self,
        credential: str,
        kind: CommandKind,
        phone_number: str,
        build_command: Callable[[str], str],
    ) -> MessageResult:
        """Select a device, send the command and wait for its result."""
        # Selection happens after any media fetch, so it sees current sessions
        session = self.registry.select_for_sending(credential)
        if session is None:
            raise NoActiveDeviceError(details={"api_key": sanitize_api_key(credential)})

        request_id = str(uuid.uuid4())
        command = build_command(request_id)
        future = self.correlator.register(session, request_id, kind, get_request_timeout_s(self.settings))

        if not session.transport.is_open:
            self.correlator.cancel(
                session.session_id, request_id, ConnectionLostError("WebSocket connection is not open"),
            )
        else:
            try:
                await session.transport.send_text(command)
            except Exception as e:
                self.correlator.cancel(
                    session.session_id, request_id, ConnectionLostError(f"Failed to send command: {e}"),
                )
            else:
                log_audit_event(
                    AuditEventType.COMMAND_DISPATCHED,
                    session_id=session.session_id,
                    credential=credential,
                    details={"request_id": request_id, "kind": kind.value},
                )

        log_record = {
            "api_key": credential,
            "session_id": session.session_id,
            "request_id": request_id,
            "phone_number": phone_number,
            "type": kind.value,
        }
        try:
            result: MessageResult = await future
        except asyncio.CancelledError:
            self.correlator.cancel(session.session_id, request_id, ConnectionLostError("Caller cancelled"))
            raise
        except GatewayError as e:
            log_audit_event(
                AuditEventType.COMMAND_FAILED,
                session_id=session.session_id,
                credential=credential,
                details={"request_id": request_id, "kind": kind.value, "code": e.code},
            )
            await self._emit_message_log({**log_record, "status": "error", "error": e.code, "timestamp": self._clock()})
            raise

        log_audit_event(
            AuditEventType.COMMAND_COMPLETED,
            session_id=session.session_id,
            credential=credential,
            details={"request_id": request_id, "kind": kind.value, "success": result.success},
        )
        await self._emit_message_log({
            **log_record,
            "status": "success" if result.success else "failure",
            "error": result.error,
            "timestamp": result.timestamp,
        })
        return result

    # =====================================================
    #  Queries
    # =====================================================

    def list_active_sessions(self, credential: str) -> List[SessionInfo]:
        """Snapshots of every session under ``credential``, each with its ``active`` flag."""
        return self.registry.list_sessions(credential)

    def health(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "status": "ok" if self.is_running else "stopped",
            "total_session_count": self.registry.total_session_count(),
            "uptime_ms": now - self._started_at if self._started_at is not None else 0,
            "now": now,
        }

    # =====================================================
    #  Hooks
    # =====================================================

    async def _emit_message_log(self, record: Dict[str, Any]) -> None:
        if self._on_message_log is None:
            return
        try:
            await self._call_hook(self._on_message_log, record)
        except Exception as e:
            logger.error("Message log hook failed: error=%s", str(e), exc_info=True)

    async def report_error(self, code: str, message: str, exc: BaseException, session_id: Optional[str] = None) -> None:
        """Hand an internal fault to ``on_error``, or log it when no hook is set."""
        payload = {
            "code": code,
            "message": message,
            "session_id": session_id,
            "original_error": str(exc),
        }
        if self._on_error is None:
            logger.error("%s: session=%s error=%s", code, session_id, str(exc), exc_info=exc)
            return
        try:
            await self._call_hook(self._on_error, payload)
        except Exception as e:
            logger.error("Error hook failed: error=%s", str(e), exc_info=True)

    @staticmethod
    async def _call_hook(hook: EventHook, payload: Dict[str, Any]) -> None:
        result = hook(payload)
        if inspect.isawaitable(result):
            await result


# =====================================================
#  FastAPI adapter
# =====================================================

def get_client_ip(websocket: WebSocket) -> str:
    forwarded_for = websocket.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = websocket.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    if websocket.client is not None and websocket.client.host:
        return websocket.client.host
    return "unknown"


async def handle_ws_connection(websocket: WebSocket, gateway: DeviceGateway) -> None:
    """Main WebSocket handler. Frames from one device are processed in arrival order."""
    await websocket.accept()
    transport = WebSocketTransport(websocket)
    conn = gateway.open_connection(transport, get_client_ip(websocket))

    try:
        while transport.is_open:
            raw = await websocket.receive_text()
            await gateway.handle_message(conn, raw)
    except WebSocketDisconnect:
        logger.info("WS disconnected by peer: session=%s", conn.session_id)
    except Exception as e:
        await gateway.report_error("WS_ERROR", "WebSocket error", e, session_id=conn.session_id)
    finally:
        transport.mark_closed()
        gateway.close_connection(conn)
