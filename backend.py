import redis
import json
from typing import Any, List, Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, GROUP_TTL_SECONDS
from redis_keys import REDIS_USERS_KEY, REDIS_CONN_GROUPS_KEY, REDIS_CONN_CHANNEL
from errors import RelayTransportError
from logging_config import get_logger

logger = get_logger(__name__)


def build_envelope(target: str, arguments: List[Any]) -> dict:
    """Frame delivered to relay connections: the event name plus its positional arguments."""
    return {"target": target, "arguments": list(arguments)}


class RedisBackend:
    """Group-messaging relay on top of Redis sets and pub/sub.

    Group membership lives in ``room:users:{room}``. Delivery is per connection:
    a broadcast publishes the frame on the channel of every current member, so a
    relay connection only ever needs to subscribe to its own channel.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None,
                 group_ttl: int = GROUP_TTL_SECONDS):
        self.redis_client = redis_client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        self.group_ttl = group_ttl
        logger.info(f"Initializing RedisBackend for {REDIS_HOST}:{REDIS_PORT}")

    def ping(self):
        try:
            self.redis_client.ping()
            self.pubsub_client.ping()
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise RelayTransportError(f"Redis unavailable: {e}") from e
        logger.info(f"Redis clients connected successfully to {REDIS_HOST}:{REDIS_PORT}")
        return True

    def join_group(self, group_name: str, connection_id: str):
        """Add a connection to a group. Joining twice is harmless."""
        logger.debug(f"Adding connection {connection_id} to group {group_name}")
        users_key = REDIS_USERS_KEY.format(slug=group_name)
        groups_key = REDIS_CONN_GROUPS_KEY.format(connection_id=connection_id)
        try:
            pipe = self.redis_client.pipeline()
            pipe.sadd(users_key, connection_id)
            pipe.sadd(groups_key, group_name)
            if self.group_ttl:
                pipe.expire(users_key, self.group_ttl)
                pipe.expire(groups_key, self.group_ttl)
            added = pipe.execute()[0]
        except redis.RedisError as e:
            logger.error(f"Failed to add {connection_id} to group {group_name}: {e}", exc_info=True)
            raise RelayTransportError(f"Failed to join group {group_name}") from e

        if added:
            logger.debug(f"Connection {connection_id} added to group {group_name} (new member)")
        else:
            logger.debug(f"Connection {connection_id} already in group {group_name}")
        return True

    def leave_group(self, group_name: str, connection_id: str):
        logger.debug(f"Removing connection {connection_id} from group {group_name}")
        try:
            self.redis_client.srem(REDIS_USERS_KEY.format(slug=group_name), connection_id)
            self.redis_client.srem(REDIS_CONN_GROUPS_KEY.format(connection_id=connection_id), group_name)
        except redis.RedisError as e:
            raise RelayTransportError(f"Failed to leave group {group_name}") from e
        return True

    def remove_connection(self, connection_id: str):
        """Remove a connection from every group it joined."""
        groups_key = REDIS_CONN_GROUPS_KEY.format(connection_id=connection_id)
        try:
            groups = self.redis_client.smembers(groups_key)
            for group_name in groups:
                self.redis_client.srem(REDIS_USERS_KEY.format(slug=group_name), connection_id)
            self.redis_client.delete(groups_key)
        except redis.RedisError as e:
            raise RelayTransportError(f"Failed to remove connection {connection_id}") from e
        logger.debug(f"Connection {connection_id} removed from groups: {sorted(groups)}")
        return groups

    @property
    def refresh_interval(self) -> float:
        """Seconds between membership TTL refreshes for a live connection."""
        return self.group_ttl / 3 if self.group_ttl else 0

    def refresh_connection(self, connection_id: str):
        """Push back the expiry of a live connection's memberships."""
        if not self.group_ttl:
            return set()
        groups_key = REDIS_CONN_GROUPS_KEY.format(connection_id=connection_id)
        try:
            groups = self.redis_client.smembers(groups_key)
            if not groups:
                return groups
            pipe = self.redis_client.pipeline()
            pipe.expire(groups_key, self.group_ttl)
            for group_name in groups:
                pipe.expire(REDIS_USERS_KEY.format(slug=group_name), self.group_ttl)
            pipe.execute()
        except redis.RedisError as e:
            raise RelayTransportError(f"Failed to refresh connection {connection_id}") from e
        logger.debug(f"Refreshed memberships of {connection_id}: {sorted(groups)}")
        return groups

    def get_group_members(self, group_name: str):
        """Get all connection IDs in a group."""
        users_key = REDIS_USERS_KEY.format(slug=group_name)
        try:
            members = self.redis_client.smembers(users_key)
        except redis.RedisError as e:
            raise RelayTransportError(f"Failed to read members of group {group_name}") from e
        logger.debug(f"Group {group_name} has {len(members)} members")
        return members

    def get_connection_channel_name(self, connection_id: str) -> str:
        """Get the Redis pub/sub channel name for a connection."""
        return REDIS_CONN_CHANNEL.format(connection_id=connection_id)

    def send_to_connection(self, connection_id: str, target: str, arguments: List[Any]):
        """Publish a frame to a single connection."""
        channel = self.get_connection_channel_name(connection_id)
        message_json = json.dumps(build_envelope(target, arguments))
        try:
            subscribers = self.redis_client.publish(channel, message_json)
        except redis.RedisError as e:
            logger.error(f"Failed to publish {target} to {connection_id}: {e}", exc_info=True)
            raise RelayTransportError(f"Failed to deliver {target}") from e
        logger.debug(f"Published {target} to connection {connection_id}, {subscribers} subscribers")
        return subscribers

    def broadcast_to_group(self, group_name: str, target: str, arguments: List[Any]) -> int:
        """Publish a frame to every current member of a group, the sender included."""
        members = self.get_group_members(group_name)
        for connection_id in sorted(members):
            self.send_to_connection(connection_id, target, arguments)
        logger.debug(f"Broadcast {target} to {len(members)} members of group {group_name}")
        return len(members)

    def subscribe_to_connection(self, connection_id: str):
        """Create a pubsub subscriber for a connection channel."""
        channel = self.get_connection_channel_name(connection_id)
        logger.debug(f"Subscribing to Redis channel {channel}")
        try:
            pubsub = self.pubsub_client.pubsub()
            pubsub.subscribe(channel)
        except redis.RedisError as e:
            raise RelayTransportError(f"Failed to subscribe to {channel}") from e
        logger.debug(f"Successfully subscribed to channel {channel}")
        return pubsub


redis_backend = RedisBackend()


def get_relay_backend() -> RedisBackend:
    return redis_backend
