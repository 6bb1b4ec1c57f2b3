"""Tests for the client side of the relay contract."""

import pytest
import requests
from unittest.mock import AsyncMock, MagicMock, patch

from errors import RelayTransportError, ValidationError
from relay_client import RelayClient
from schemas.signaling import JoinEvent, SignalEvent, SignalKind


@pytest.fixture
def client():
    c = RelayClient("http://relay.test/")
    c.connection_id = "conn-a"
    return c


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body if body is not None else {"success": True}
    return response


# ── gateway calls ────────────────────────────────────────────────────────────

class TestGatewayCalls:

    @pytest.mark.asyncio
    async def test_join_room_posts_room_and_identity(self, client):
        with patch("relay_client.requests.request", return_value=_response()) as request:
            await client.join_room("abc123")

        request.assert_called_once()
        method, url = request.call_args.args
        assert (method, url) == ("POST", "http://relay.test/api/joinRoom")
        assert request.call_args.kwargs["json"] == {"roomId": "abc123", "connectionId": "conn-a"}

    @pytest.mark.asyncio
    async def test_send_signal_embeds_sender(self, client):
        offer = {"type": "offer", "sdp": "v=0"}
        with patch("relay_client.requests.request", return_value=_response()) as request:
            await client.send_signal("abc123", SignalKind.OFFER, offer)

        assert request.call_args.args[1] == "http://relay.test/api/sendSignal"
        assert request.call_args.kwargs["json"] == {
            "roomId": "abc123", "type": "offer", "signal": offer, "connectionId": "conn-a",
        }

    @pytest.mark.asyncio
    async def test_candidate_uses_wire_name(self, client):
        with patch("relay_client.requests.request", return_value=_response()) as request:
            await client.send_signal("abc123", SignalKind.CANDIDATE, {"candidate": "candidate:1"})

        assert request.call_args.kwargs["json"]["type"] == "ice-candidate"

    @pytest.mark.asyncio
    async def test_bad_request_raises_validation_error(self, client):
        body = {"error": "Missing required fields: roomId, connectionId"}
        with patch("relay_client.requests.request", return_value=_response(400, body)):
            with pytest.raises(ValidationError, match="Missing required fields"):
                await client.join_room("")

    @pytest.mark.asyncio
    async def test_server_error_raises_relay_transport_error(self, client):
        with patch("relay_client.requests.request", return_value=_response(502, {"error": "Relay unavailable"})):
            with pytest.raises(RelayTransportError):
                await client.send_signal("abc123", SignalKind.ANSWER, {"type": "answer", "sdp": "v=0"})

    @pytest.mark.asyncio
    async def test_unreachable_relay_raises_relay_transport_error(self, client):
        with patch("relay_client.requests.request", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(RelayTransportError):
                await client.join_room("abc123")

    @pytest.mark.asyncio
    async def test_negotiate_returns_url(self, client):
        with patch("relay_client.requests.request", return_value=_response(body={"url": "ws://relay.test/api/ws"})):
            assert await client.negotiate() == "ws://relay.test/api/ws"


# ── relay frames ─────────────────────────────────────────────────────────────

class TestDispatch:

    @pytest.mark.asyncio
    async def test_user_joined_parsed_into_join_event(self, client):
        received = []
        client.subscribe("userJoined", received.append)

        await client.dispatch({"target": "userJoined", "arguments": [{"connectionId": "conn-b"}]})

        assert received == [JoinEvent(connectionId="conn-b")]

    @pytest.mark.asyncio
    async def test_signal_parsed_and_async_handler_awaited(self, client):
        handler = AsyncMock()
        client.subscribe("signal", handler)

        await client.dispatch({"target": "signal", "arguments": [
            {"type": "ice-candidate", "signal": {"candidate": "candidate:1"}, "connectionId": "conn-b"},
        ]})

        handler.assert_awaited_once()
        event = handler.call_args.args[0]
        assert isinstance(event, SignalEvent)
        assert event.type == SignalKind.CANDIDATE

    @pytest.mark.asyncio
    async def test_signal_without_sender_dropped(self, client):
        received = []
        client.subscribe("signal", received.append)

        await client.dispatch({"target": "signal", "arguments": [{"type": "offer", "signal": {"sdp": "v=0"}}]})

        assert received == []

    @pytest.mark.asyncio
    async def test_unsubscribed_target_ignored(self, client):
        received = []
        client.subscribe("signal", received.append)

        await client.dispatch({"target": "somethingElse", "arguments": [{}]})

        assert received == []

    @pytest.mark.asyncio
    async def test_connect_reads_assigned_identity(self):
        c = RelayClient("http://relay.test")
        websocket = MagicMock()
        websocket.recv = AsyncMock(return_value='{"target": "connected", "arguments": [{"connectionId": "conn-z"}]}')

        with patch("relay_client.requests.request", return_value=_response(body={"url": "ws://relay.test/api/ws"})), \
             patch("relay_client.websockets.connect", new=AsyncMock(return_value=websocket)) as connect:
            assert await c.connect() == "conn-z"

        connect.assert_awaited_once_with("ws://relay.test/api/ws")
        assert c.connection_id == "conn-z"


# ── malformed input ──────────────────────────────────────────────────────────

class TestMalformedInput:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arguments", [{"type": "offer"}, [], None, "conn-b"])
    async def test_frame_without_arguments_list_dropped(self, client, arguments):
        received = []
        client.subscribe("signal", received.append)

        await client.dispatch({"target": "signal", "arguments": arguments})

        assert received == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frame", [["signal"], "userJoined", 42, None])
    async def test_frame_that_is_not_an_object_dropped(self, client, frame):
        received = []
        client.subscribe("signal", received.append)
        client.subscribe("userJoined", received.append)

        await client.dispatch(frame)

        assert received == []

    @pytest.mark.asyncio
    async def test_listen_keeps_going_after_malformed_frames(self, client):
        received = []
        client.subscribe("userJoined", received.append)

        class Socket:
            def __aiter__(self):
                return self._frames()

            async def _frames(self):
                yield "[1, 2]"
                yield '{"target": "userJoined", "arguments": {"connectionId": "conn-x"}}'
                yield "not json"
                yield '{"target": "userJoined", "arguments": [{"connectionId": "conn-b"}]}'

        client.websocket = Socket()
        await client.listen()

        assert received == [JoinEvent(connectionId="conn-b")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [200, 400])
    async def test_non_json_response_raises_relay_transport_error(self, client, status_code):
        response = _response(status_code)
        response.json.side_effect = requests.JSONDecodeError("Expecting value", "<html>", 0)

        with patch("relay_client.requests.request", return_value=response):
            with pytest.raises(RelayTransportError):
                await client.join_room("abc123")

    @pytest.mark.asyncio
    async def test_non_object_response_raises_relay_transport_error(self, client):
        with patch("relay_client.requests.request", return_value=_response(body=["ok"])):
            with pytest.raises(RelayTransportError):
                await client.negotiate()
