# Shared Configuration
HOST = "0.0.0.0"
PORT = 8080
PLAYER_HEIGHT = 1.5

# Session Settings (seconds)
MOVE_RATE_LIMIT = 0.1
CONNECTION_TIMEOUT = 60.0
KEEP_ALIVE_INTERVAL = 10.0
SNAPSHOT_TICK_HZ = 20
TICK_DT_MS = 1000 / SNAPSHOT_TICK_HZ
STALE_PLAYER_SEC = 5.0

# Broadcast Modes
BROADCAST_PUSH = "push"
BROADCAST_SNAPSHOT = "snapshot"
BROADCAST_MODES = (BROADCAST_PUSH, BROADCAST_SNAPSHOT)

# Protocol Message Types (server -> client)
MSG_INIT = "init"
MSG_PLAYER_JOINED = "playerJoined"
MSG_PLAYER_MOVED = "playerMoved"
MSG_PLAYER_LEFT = "playerLeft"
MSG_GAME_STATE = "gameState"
MSG_PONG = "pong"

# Protocol Message Types (client -> server)
MSG_MOVE = "move"
MSG_PING = "ping"
