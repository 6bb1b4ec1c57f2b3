"""Join a PairCall room and negotiate a call with whoever else joins it.

Usage:
    python call_client.py --room ROOM [--server URL] [--log-level LEVEL]

Examples:
    python call_client.py --room abc123
    python call_client.py --server https://relay.example.com --room abc123
"""

import argparse
import asyncio
import os

from errors import SignalingError
from logging_config import get_logger, setup_logging
from negotiation import NegotiationSession
from peer import create_peer
from relay_client import RelayClient

logger = get_logger(__name__)


def print_status(message: str, level: str = "info"):
    print(f"[{level}] {message}")


async def run_call(server: str, room_id: str):
    client = RelayClient(server)
    connection_id = await client.connect()

    async def publish(kind, payload):
        await client.send_signal(room_id, kind, payload)

    session = NegotiationSession(connection_id, publish, create_peer, on_status=print_status)
    client.subscribe("userJoined", session.submit)
    client.subscribe("signal", session.submit)

    negotiation = asyncio.create_task(session.run())
    listener = asyncio.create_task(client.listen())
    try:
        await client.join_room(room_id)
        print_status(f"Connected to room {room_id}", "success")
        done, _ = await asyncio.wait({negotiation, listener}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            task.result()
    finally:
        await session.hang_up()
        for task in (negotiation, listener):
            task.cancel()
        await asyncio.gather(negotiation, listener, return_exceptions=True)
        await client.close()


def main():
    parser = argparse.ArgumentParser(description="PairCall participant")
    parser.add_argument("--server", default=os.getenv("PAIRCALL_SERVER", "http://localhost:8000"),
                        help="Relay base URL (default: http://localhost:8000)")
    parser.add_argument("--room", required=True, help="Room identifier shared with the other participant")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    setup_logging(log_level=args.log_level, log_file=os.getenv("LOG_FILE", None))
    try:
        asyncio.run(run_call(args.server, args.room))
    except KeyboardInterrupt:
        logger.info("Interrupted, call ended")
    except SignalingError as e:
        logger.error(f"Call failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
