"""Gateway tests: handshake, routing, dispatch and teardown.

Drives DeviceGateway through in-memory transports; no sockets involved.
"""
from pathlib import Path
import asyncio
import json
import logging
import sys
from types import SimpleNamespace

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
import pytest_asyncio
from starlette.websockets import WebSocketState

from conftest import VALID_KEY, FakeClock, FakeTransport, accept_key, wait_for
from config.settings import Settings
from core.exceptions import (
    ConnectionLostError,
    GatewayError,
    GatewayShutdownError,
    MediaFetchError,
    NoActiveDeviceError,
    RequestTimeoutError,
    ValidationError,
)
from gateway.ws_server import ConnectionState, DeviceGateway, handle_ws_connection
from schemas.ws_messages import CommandKind


def _auth(key=VALID_KEY, **data):
    return json.dumps({"type": "auth", "apiKey": key, "data": data})


def _status(logged_in=True, ready=True):
    return json.dumps({"type": "status", "data": {"whatsappLoggedIn": logged_in, "ready": ready}})


def _result(request_id, success=True, error=None):
    return json.dumps({"type": "message-result", "requestId": request_id, "success": success, "error": error})


def _make_gateway(**overrides):
    settings_kwargs = {
        "API_KEYS": VALID_KEY,
        "REQUEST_TIMEOUT_MS": 200,
        "MAX_SESSIONS_PER_KEY": 10,
    }
    settings_kwargs.update(overrides.pop("settings", {}))
    overrides.setdefault("validate_api_key", accept_key)
    return DeviceGateway(settings=Settings(**settings_kwargs), **overrides)


async def _connect(gw, key=VALID_KEY, activate=True):
    transport = FakeTransport()
    conn = gw.open_connection(transport, "127.0.0.1")
    await gw.handle_message(conn, _auth(key, extensionVersion="1.0.0", browser="Chrome"))
    if activate:
        await gw.handle_message(conn, _status())
    return conn, transport


async def _ack_next(gw, conn, transport, command_type, success=True, error=None):
    """Wait for the next command on ``transport`` and answer it."""
    seen = len(transport.of_type(command_type))
    await wait_for(lambda: len(transport.of_type(command_type)) > seen)
    command = transport.of_type(command_type)[-1]
    await gw.handle_message(conn, _result(command["requestId"], success, error))
    return command


@pytest_asyncio.fixture
async def gateway():
    gw = _make_gateway()
    yield gw
    for conn in list(gw._connections):
        gw.close_connection(conn)
    await gw.stop()


# ============================================================================
#  Handshake
# ============================================================================

class TestAuth:

    @pytest.mark.asyncio
    async def test_valid_key_creates_session(self, gateway):
        conn, transport = await _connect(gateway, activate=False)

        assert conn.state is ConnectionState.AUTHENTICATED
        assert transport.sent == [{"type": "auth-success", "sessionId": conn.session_id}]
        [info] = gateway.list_active_sessions(VALID_KEY)
        assert info.session_id == conn.session_id
        assert info.active is False
        assert info.extension_version == "1.0.0"
        assert info.browser == "Chrome"
        assert info.ip == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_invalid_key_rejected_and_closed(self, gateway):
        conn, transport = await _connect(gateway, key="wrong-key", activate=False)

        assert transport.sent == [{
            "type": "error",
            "error": {"code": "AUTHENTICATION_FAILED", "message": "Invalid API key"},
        }]
        assert transport.close_code == 1008
        assert conn.state is ConnectionState.CLOSED
        assert gateway.registry.total_session_count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("verdict", [True, {"valid": True}])
    async def test_validator_result_shapes(self, verdict):
        async def validate(key):
            return verdict

        gw = _make_gateway(validate_api_key=validate)
        conn, transport = await _connect(gw, key="anything", activate=False)
        assert transport.last["type"] == "auth-success"
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_validator_exception_is_auth_failure(self):
        errors = []

        async def validate(key):
            raise RuntimeError("key store down")

        gw = _make_gateway(validate_api_key=validate, on_error=errors.append)
        conn, transport = await _connect(gw, activate=False)

        assert transport.sent[0]["error"]["code"] == "AUTHENTICATION_FAILED"
        assert transport.close_code == 1008
        assert errors[0]["code"] == "AUTH_ERROR"
        assert errors[0]["original_error"] == "key store down"

    @pytest.mark.asyncio
    async def test_session_cap_rejects_extra_connection(self):
        gw = _make_gateway(settings={"MAX_SESSIONS_PER_KEY": 1})
        first, _ = await _connect(gw)
        second, transport = await _connect(gw, activate=False)

        assert transport.sent[0]["type"] == "error"
        assert transport.sent[0]["error"]["code"] == "MAX_SESSIONS_EXCEEDED"
        assert transport.close_code == 1008
        assert second.state is ConnectionState.CLOSED
        assert gw.registry.total_session_count() == 1
        gw.close_connection(first)

    @pytest.mark.asyncio
    async def test_duplicate_auth_ignored(self, gateway):
        conn, transport = await _connect(gateway, activate=False)
        session_id = conn.session_id
        await gateway.handle_message(conn, _auth())
        assert len(transport.sent) == 1
        assert conn.session_id == session_id
        assert gateway.registry.total_session_count() == 1

    @pytest.mark.asyncio
    async def test_connection_closed_during_validation(self):
        release = asyncio.Event()

        async def slow_validate(key):
            await release.wait()
            return True

        gw = _make_gateway(validate_api_key=slow_validate)
        transport = FakeTransport()
        conn = gw.open_connection(transport)
        auth_task = asyncio.ensure_future(gw.handle_message(conn, _auth()))
        await asyncio.sleep(0)

        transport.open = False
        gw.close_connection(conn)
        release.set()
        await auth_task

        assert transport.sent == []
        assert gw.registry.total_session_count() == 0


# ============================================================================
#  Inbound routing
# ============================================================================

class TestInbound:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [
        json.dumps({"type": "status", "data": {"whatsappLoggedIn": True, "ready": True}}),
        json.dumps({"type": "heartbeat"}),
        json.dumps({"type": "message-result", "requestId": "r-1", "success": True}),
    ])
    async def test_requires_auth(self, gateway, frame):
        transport = FakeTransport()
        conn = gateway.open_connection(transport)
        await gateway.handle_message(conn, frame)
        assert transport.sent == [{
            "type": "error",
            "error": {"code": "NOT_AUTHENTICATED", "message": "Not authenticated"},
        }]
        assert transport.is_open

    @pytest.mark.asyncio
    async def test_malformed_frames_keep_connection_open(self, gateway):
        conn, transport = await _connect(gateway)
        await gateway.handle_message(conn, "{not json")
        await gateway.handle_message(conn, json.dumps({"type": "bogus"}))
        await gateway.handle_message(conn, json.dumps({"type": "message-result", "requestId": "r"}))

        codes = [m["error"]["code"] for m in transport.of_type("error")]
        assert codes == ["INVALID_MESSAGE", "UNKNOWN_MESSAGE_TYPE", "VALIDATION_ERROR"]
        assert transport.is_open
        assert conn.authenticated

    @pytest.mark.asyncio
    async def test_status_toggles_active(self, gateway):
        conn, _ = await _connect(gateway, activate=False)
        await gateway.handle_message(conn, _status(True, True))
        assert gateway.list_active_sessions(VALID_KEY)[0].active is True
        await gateway.handle_message(conn, _status(False, True))
        assert gateway.list_active_sessions(VALID_KEY)[0].active is False

    @pytest.mark.asyncio
    async def test_heartbeat_refreshes_liveness(self):
        clock = FakeClock()
        gw = _make_gateway(clock=clock)
        conn, _ = await _connect(gw)
        clock.advance(10000)
        await gw.handle_message(conn, json.dumps({"type": "heartbeat"}))
        assert gw.registry.get_session(conn.session_id).last_heartbeat_at == clock.now
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_unknown_result_is_ignored(self, gateway):
        conn, transport = await _connect(gateway)
        before = len(transport.sent)
        await gateway.handle_message(conn, _result("never-sent"))
        assert len(transport.sent) == before


# ============================================================================
#  Dispatch
# ============================================================================

class TestDispatch:

    @pytest.mark.asyncio
    async def test_send_message_round_trip(self, gateway):
        conn, transport = await _connect(gateway)
        task = asyncio.ensure_future(
            gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        command = await _ack_next(gateway, conn, transport, "send-message")
        result = await task

        assert command["data"] == {"phoneNumber": "+15550001", "message": "hi"}
        assert result.request_id == command["requestId"]
        assert result.success is True
        assert result.error is None
        assert gateway.correlator.pending_count(conn.session_id) == 0

    @pytest.mark.asyncio
    async def test_device_reported_failure_is_a_result(self, gateway):
        conn, transport = await _connect(gateway)
        task = asyncio.ensure_future(
            gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        await _ack_next(gateway, conn, transport, "send-message", success=False, error="Chat not found")
        result = await task
        assert result.success is False
        assert result.error == "Chat not found"

    @pytest.mark.asyncio
    async def test_round_robin_across_devices(self, gateway):
        devices = [await _connect(gateway) for _ in range(3)]
        counts = [0, 0, 0]
        order = []
        for sent in range(4):
            task = asyncio.ensure_future(
                gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
            )
            await wait_for(lambda: sum(len(t.of_type("send-message")) for _, t in devices) > sent)
            for index, (conn, transport) in enumerate(devices):
                commands = transport.of_type("send-message")
                if len(commands) > counts[index]:
                    counts[index] = len(commands)
                    order.append(index)
                    await gateway.handle_message(conn, _result(commands[-1]["requestId"]))
            await task

        assert order == [0, 1, 2, 0]

    @pytest.mark.asyncio
    async def test_no_active_device(self, gateway):
        conn, _ = await _connect(gateway, activate=False)
        with pytest.raises(NoActiveDeviceError) as exc:
            await gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        assert exc.value.code == "NO_ACTIVE_DEVICE"
        assert gateway.registry.get_session(conn.session_id).pending == {}

    @pytest.mark.asyncio
    async def test_unknown_credential_has_no_device(self, gateway):
        await _connect(gateway)
        with pytest.raises(NoActiveDeviceError):
            await gateway.send_message("other-key", {"phoneNumber": "+15550001", "message": "hi"})

    @pytest.mark.asyncio
    async def test_validation_happens_before_selection(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.send_message(VALID_KEY, {"phoneNumber": "15550001", "message": "hi"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("phone", ["+15550001\n", "+1٣٣"])
    async def test_non_ascii_or_newline_phone_never_reaches_device(self, gateway, phone):
        _, transport = await _connect(gateway)
        with pytest.raises(ValidationError):
            await gateway.send_message(VALID_KEY, {"phoneNumber": phone, "message": "hi"})
        assert transport.of_type("send-message") == []

    @pytest.mark.asyncio
    async def test_timeout_then_late_result(self, gateway):
        conn, transport = await _connect(gateway)
        with pytest.raises(RequestTimeoutError) as exc:
            await gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        assert exc.value.code == "REQUEST_TIMEOUT"

        command = transport.of_type("send-message")[0]
        before = len(transport.sent)
        await gateway.handle_message(conn, _result(command["requestId"]))
        assert len(transport.sent) == before

    @pytest.mark.asyncio
    async def test_closed_transport_fails_fast(self, gateway):
        conn, transport = await _connect(gateway)
        transport.open = False
        with pytest.raises(ConnectionLostError):
            await gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        assert gateway.correlator.pending_count(conn.session_id) == 0

    @pytest.mark.asyncio
    async def test_send_failure_is_connection_lost(self, gateway):
        conn, transport = await _connect(gateway)
        transport.fail_sends = True
        with pytest.raises(ConnectionLostError) as exc:
            await gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        assert "socket write failed" in exc.value.message
        assert gateway.correlator.pending_count(conn.session_id) == 0

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending(self, gateway):
        conn, transport = await _connect(gateway)
        task = asyncio.ensure_future(
            gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        await wait_for(lambda: transport.of_type("send-message"))
        gateway.close_connection(conn)

        with pytest.raises(ConnectionLostError) as exc:
            await task
        assert exc.value.code == "CONNECTION_LOST"
        assert gateway.registry.total_session_count() == 0

    @pytest.mark.asyncio
    async def test_caller_cancellation_clears_entry(self, gateway):
        conn, transport = await _connect(gateway)
        task = asyncio.ensure_future(
            gateway.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        await wait_for(lambda: transport.of_type("send-message"))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert gateway.correlator.pending_count(conn.session_id) == 0


# ============================================================================
#  Media
# ============================================================================

class FakeResolver:
    def __init__(self, data_url="data:image/png;base64,AAAA", error=None):
        self.calls = []
        self.data_url = data_url
        self.error = error

    async def resolve(self, url, kind):
        self.calls.append((url, kind))
        if self.error is not None:
            raise self.error
        return self.data_url


class TestMedia:

    @pytest.mark.asyncio
    async def test_image_url_is_resolved_before_dispatch(self):
        resolver = FakeResolver()
        gw = _make_gateway(media_resolver=resolver)
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(gw.send_image(VALID_KEY, {
            "phoneNumber": "+15550001", "imageUrl": "https://example.com/cat.png", "caption": "cat",
        }))
        command = await _ack_next(gw, conn, transport, "send-image")
        await task

        assert resolver.calls == [("https://example.com/cat.png", CommandKind.IMAGE)]
        assert command["data"] == {
            "phoneNumber": "+15550001",
            "imageDataUrl": "data:image/png;base64,AAAA",
            "caption": "cat",
        }
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_inline_data_url_skips_resolver(self):
        resolver = FakeResolver()
        gw = _make_gateway(media_resolver=resolver)
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(gw.send_video(VALID_KEY, {
            "phoneNumber": "+15550001", "videoDataUrl": "data:video/mp4;base64,BBBB",
        }))
        command = await _ack_next(gw, conn, transport, "send-video")
        await task

        assert resolver.calls == []
        assert command["data"]["videoDataUrl"] == "data:video/mp4;base64,BBBB"
        assert command["data"]["caption"] == ""
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_document_sends_name(self):
        gw = _make_gateway(media_resolver=FakeResolver("data:application/pdf;base64,CCCC"))
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(gw.send_document(VALID_KEY, {
            "phoneNumber": "+15550001",
            "documentUrl": "https://example.com/r.pdf",
            "documentName": "r.pdf",
        }))
        command = await _ack_next(gw, conn, transport, "send-document")
        await task

        assert command["data"]["documentName"] == "r.pdf"
        assert command["data"]["documentDataUrl"] == "data:application/pdf;base64,CCCC"
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_fetch_error_sends_nothing(self):
        gw = _make_gateway(media_resolver=FakeResolver(error=MediaFetchError("Failed to fetch URL: 404 Not Found")))
        conn, transport = await _connect(gw)
        with pytest.raises(MediaFetchError) as exc:
            await gw.send_image(VALID_KEY, {"phoneNumber": "+15550001", "imageUrl": "https://example.com/x.png"})
        assert exc.value.code == "FETCH_ERROR"
        assert transport.of_type("send-image") == []
        gw.close_connection(conn)


# ============================================================================
#  Lifecycle, hooks, liveness
# ============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_twice_fails(self, gateway):
        await gateway.start()
        with pytest.raises(GatewayError) as exc:
            await gateway.start()
        assert exc.value.code == "ALREADY_RUNNING"
        assert gateway.health()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_stop_fails_pending_and_closes_devices(self):
        gw = _make_gateway(settings={"REQUEST_TIMEOUT_MS": 5000})
        await gw.start()
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(
            gw.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        await wait_for(lambda: transport.of_type("send-message"))

        await gw.stop()

        with pytest.raises(GatewayShutdownError) as exc:
            await task
        assert exc.value.code == "GATEWAY_SHUTDOWN"
        assert transport.close_code == 1000
        assert transport.close_reason == "Server shutting down"
        assert gw.registry.total_session_count() == 0
        assert gw.health()["status"] == "stopped"
        assert not gw.sweeper.is_running
        await gw.stop()

    @pytest.mark.asyncio
    async def test_health_counts_sessions(self, gateway):
        await _connect(gateway)
        await _connect(gateway, activate=False)
        health = gateway.health()
        assert health["total_session_count"] == 2
        assert health["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_stale_device_is_evicted(self):
        clock = FakeClock()
        gw = _make_gateway(clock=clock)
        conn, transport = await _connect(gw)
        clock.advance(60001)

        evicted = await gw.sweeper.sweep()

        assert evicted == [conn.session_id]
        assert transport.close_code == 1000
        assert transport.close_reason == "Heartbeat timeout"
        assert conn.state is ConnectionState.CLOSED
        assert gw.list_active_sessions(VALID_KEY) == []
        # Reader loop exits afterwards; teardown is a no-op the second time
        gw.close_connection(conn)


class TestHooks:

    @pytest.mark.asyncio
    async def test_message_log_on_success(self):
        records = []
        gw = _make_gateway(on_message_log=records.append)
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(
            gw.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        command = await _ack_next(gw, conn, transport, "send-message")
        await task

        [record] = records
        assert record["status"] == "success"
        assert record["request_id"] == command["requestId"]
        assert record["session_id"] == conn.session_id
        assert record["phone_number"] == "+15550001"
        assert record["type"] == "message"
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_message_log_on_timeout(self):
        records = []
        gw = _make_gateway(on_message_log=records.append)
        conn, _ = await _connect(gw)
        with pytest.raises(RequestTimeoutError):
            await gw.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})

        assert records[0]["status"] == "error"
        assert records[0]["error"] == "REQUEST_TIMEOUT"
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_send(self):
        def explode(record):
            raise RuntimeError("log sink down")

        gw = _make_gateway(on_message_log=explode)
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(
            gw.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        await _ack_next(gw, conn, transport, "send-message")
        assert (await task).success is True
        gw.close_connection(conn)

    def test_validator_is_required(self):
        with pytest.raises(TypeError):
            DeviceGateway(validate_api_key=None, settings=Settings(API_KEYS=VALID_KEY))

    @pytest.mark.asyncio
    async def test_async_hook_runs_before_send_returns(self):
        records = []

        async def sink(record):
            await asyncio.sleep(0)
            records.append(record)

        gw = _make_gateway(on_message_log=sink)
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(
            gw.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        await _ack_next(gw, conn, transport, "send-message")
        await task

        assert [r["status"] for r in records] == ["success"]
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_failing_async_hook_is_logged(self, caplog):
        async def sink(record):
            raise RuntimeError("log sink down")

        gw = _make_gateway(on_message_log=sink)
        conn, transport = await _connect(gw)
        task = asyncio.ensure_future(
            gw.send_message(VALID_KEY, {"phoneNumber": "+15550001", "message": "hi"})
        )
        with caplog.at_level(logging.ERROR, logger="gateway.ws_server"):
            await _ack_next(gw, conn, transport, "send-message")
            result = await task

        assert result.success is True
        assert "Message log hook failed" in caplog.text
        assert "log sink down" in caplog.text
        gw.close_connection(conn)

    @pytest.mark.asyncio
    async def test_failing_async_error_hook_is_logged(self, caplog):
        async def on_error(payload):
            raise RuntimeError("alerting down")

        async def validate(key):
            raise RuntimeError("key store down")

        gw = _make_gateway(validate_api_key=validate, on_error=on_error)
        with caplog.at_level(logging.ERROR, logger="gateway.ws_server"):
            await _connect(gw, activate=False)

        assert "Error hook failed" in caplog.text
        assert "alerting down" in caplog.text


class BrokenSocket:
    """Accepts, then fails on the first read."""
    headers = {}
    client = SimpleNamespace(host="10.1.1.1")
    client_state = WebSocketState.CONNECTED
    application_state = WebSocketState.CONNECTED

    async def accept(self):
        pass

    async def receive_text(self):
        raise RuntimeError("socket reset")

    async def close(self, code=1000, reason=None):
        pass


@pytest.mark.asyncio
async def test_transport_error_reaches_error_hook():
    errors = []
    gw = _make_gateway(on_error=errors.append)

    await handle_ws_connection(BrokenSocket(), gw)

    [payload] = errors
    assert payload["code"] == "WS_ERROR"
    assert payload["original_error"] == "socket reset"
    assert gw._connections == set()
