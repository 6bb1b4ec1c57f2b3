REDIS_USERS_KEY = "room:users:{slug}" # room id - set of connection IDs
REDIS_CONN_GROUPS_KEY = "conn:groups:{connection_id}" # connection id - set of room ids it joined
REDIS_CONN_CHANNEL = "conn:channel:{connection_id}" # connection id - pub/sub channel name

# Rooms have no record of their own: a room exists while room:users:{id} is non-empty.
# Redis drops the set when the last member is removed.
