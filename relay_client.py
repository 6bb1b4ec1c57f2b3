"""Client side of the relay: one WebSocket for inbound frames, HTTP calls for outbound ones."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests
import websockets
from pydantic import ValidationError as ModelValidationError

from errors import RelayTransportError, ValidationError
from logging_config import get_logger
from schemas.signaling import JoinEvent, SignalEvent, SignalKind

logger = get_logger(__name__)

Handler = Callable[[Any], Optional[Awaitable[None]]]

# Relay frame targets and the models their first argument is parsed into
EVENT_MODELS = {
    "userJoined": JoinEvent,
    "signal": SignalEvent,
}

HTTP_TIMEOUT = 10


class RelayClient:
    """Connection to the signaling relay.

    Usage::

        client = RelayClient("http://localhost:8000")
        await client.connect()
        client.subscribe("signal", handler)
        await client.join_room("abc123")
        await client.listen()
    """

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        self.websocket = None
        self.connection_id: Optional[str] = None
        self.handlers: Dict[str, List[Handler]] = {}

    # ── HTTP calls ──────────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = await asyncio.get_running_loop().run_in_executor(
                None,
                lambda: requests.request(method, url, json=body, timeout=HTTP_TIMEOUT),
            )
        except requests.RequestException as e:
            raise RelayTransportError(f"{method} {path} failed: {e}") from e

        if response.status_code == 400:
            raise ValidationError(self._json(response, method, path).get("error", "Bad request"))
        if response.status_code != 200:
            raise RelayTransportError(f"{method} {path} returned {response.status_code}")
        return self._json(response, method, path)

    @staticmethod
    def _json(response, method: str, path: str) -> dict:
        try:
            data = response.json()
        except requests.JSONDecodeError as e:
            raise RelayTransportError(f"{method} {path} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise RelayTransportError(f"{method} {path} returned {type(data).__name__}, expected an object")
        return data

    async def negotiate(self) -> str:
        """Ask the relay where to open the WebSocket."""
        data = await self._request("GET", "/api/negotiate")
        return data["url"]

    async def join_room(self, room_id: str):
        await self._request("POST", "/api/joinRoom", {
            "roomId": room_id,
            "connectionId": self.connection_id,
        })
        logger.info(f"Joined room: {room_id}")

    async def send_signal(self, room_id: str, kind: SignalKind, signal: Any):
        await self._request("POST", "/api/sendSignal", {
            "roomId": room_id,
            "type": SignalKind(kind).value,
            "signal": signal,
            "connectionId": self.connection_id,
        })
        logger.debug(f"Sent {SignalKind(kind).value} to room {room_id}")

    # ── relay connection ────────────────────────────────────────────────────

    async def connect(self):
        """Open the relay connection and wait for the assigned connection identity."""
        url = await self.negotiate()
        try:
            self.websocket = await websockets.connect(url)
            frame = json.loads(await self.websocket.recv())
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise RelayTransportError(f"Could not connect to relay at {url}: {e}") from e

        if frame.get("target") != "connected":
            raise RelayTransportError(f"Unexpected first frame from relay: {frame.get('target')}")
        self.connection_id = frame["arguments"][0]["connectionId"]
        logger.info(f"Relay connected as {self.connection_id}")
        return self.connection_id

    def subscribe(self, target: str, handler: Handler):
        self.handlers.setdefault(target, []).append(handler)

    async def dispatch(self, frame: dict):
        """Parse one relay frame and hand it to its subscribers, in order."""
        if not isinstance(frame, dict):
            logger.warning(f"Dropping relay frame that is not an object: {frame!r:.80}")
            return
        target = frame.get("target")
        handlers = self.handlers.get(target)
        if not handlers:
            logger.debug(f"No handler for relay frame {target!r}")
            return

        arguments = frame.get("arguments")
        if not isinstance(arguments, list) or not arguments:
            logger.warning(f"Dropping {target} frame without an arguments list")
            return
        model = EVENT_MODELS.get(target)
        if model is not None:
            try:
                event = model.model_validate(arguments[0])
            except ModelValidationError as e:
                logger.warning(f"Dropping malformed {target} frame: {e}")
                return
        else:
            event = arguments[0]

        for handler in handlers:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result

    async def listen(self):
        """Dispatch relay frames until the connection closes."""
        try:
            async for message in self.websocket:
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"Dropping non-JSON relay frame: {message[:80]!r}")
                    continue
                await self.dispatch(frame)
        except websockets.exceptions.ConnectionClosedError as e:
            raise RelayTransportError(f"Relay connection lost: {e}") from e
        logger.info("Relay connection closed")

    async def close(self):
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
