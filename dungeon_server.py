import argparse
import asyncio
import logging
import random
import time
import uuid
import websockets
from dungeon_protocol import *
from dungeon_generator import DungeonGenerator, GeneratorConfig, PROFILE_NAMES, PROFILE_SIMPLE
from dungeon_messages import (
    InvalidMessage,
    PingMessage,
    Vector3,
    encode,
    game_state_message,
    init_message,
    parse_message,
    player_joined_message,
    player_left_message,
    player_moved_message,
    pong_message,
)

logger = logging.getLogger(__name__)

# --- Session State ---

class Participant:
    def __init__(self, player_id, websocket, spawn_point, now):
        self.player_id = player_id
        self.websocket = websocket
        self.position = Vector3(spawn_point["x"], spawn_point["y"], spawn_point["z"])
        self.rotation = Vector3(0, 0, 0)
        self.last_update = now
        self.timer = None # inactivity watchdog, one per connection

    def to_record(self):
        return {
            "id": self.player_id,
            "position": self.position.to_dict(),
            "rotation": self.rotation.to_dict(),
            "lastUpdate": int(self.last_update * 1000),
        }


class SessionHub:
    """Registry of connected participants and fan-out of their events.

    All methods run on the event loop thread. The participant map is only
    touched here, and the decode/throttle/mutate steps of a message happen
    before the first await, so one message is never interleaved with another.
    """

    def __init__(self, layout, broadcast_mode=BROADCAST_PUSH, move_rate_limit=MOVE_RATE_LIMIT,
                 connection_timeout=CONNECTION_TIMEOUT, stale_after=STALE_PLAYER_SEC, clock=time.time):
        if broadcast_mode not in BROADCAST_MODES:
            raise ValueError(f"unknown broadcast mode: {broadcast_mode!r}")
        self.layout = layout
        self.broadcast_mode = broadcast_mode
        self.move_rate_limit = move_rate_limit
        self.connection_timeout = connection_timeout
        self.stale_after = stale_after
        self.clock = clock
        self.players = {} # player_id -> Participant
        self._expiring = set()

    def _new_player_id(self):
        while True:
            player_id = str(uuid.uuid4())[:8]
            if player_id not in self.players:
                return player_id

    async def _safe_send(self, ws, payload, player_id):
        try:
            await ws.send(payload)
        except Exception as e:
            logger.warning("Send to %s failed: %s", player_id, e)
            return False
        return True

    async def broadcast(self, message, exclude=None):
        targets = [p for p in self.players.values() if p.player_id != exclude]
        if not targets:
            return
        payload = encode(message)
        await asyncio.gather(*(self._safe_send(p.websocket, payload, p.player_id) for p in targets))

    # --- Inactivity Timer ---

    def _arm_timer(self, player):
        if player.timer is not None:
            player.timer.cancel()
        loop = asyncio.get_running_loop()
        player.timer = loop.call_later(self.connection_timeout, self._on_timeout, player)

    def _on_timeout(self, player):
        player.timer = None
        if self.players.get(player.player_id) is not player:
            return
        logger.info("Connection timed out: %s", player.player_id)
        task = asyncio.ensure_future(self._expire(player))
        self._expiring.add(task)
        task.add_done_callback(self._expiring.discard)

    async def _expire(self, player):
        try:
            await player.websocket.close()
        except Exception as e:
            logger.warning("Closing %s failed: %s", player.player_id, e)
        await self.leave(player)

    # --- Lifecycle ---

    def _drop(self, player):
        if player.timer is not None:
            player.timer.cancel()
            player.timer = None
        del self.players[player.player_id]

    async def join(self, websocket):
        player_id = self._new_player_id()
        player = Participant(player_id, websocket, self.layout.spawn_point, self.clock())
        others = [p.to_record() for p in self.players.values()]
        self.players[player_id] = player
        self._arm_timer(player)

        try:
            await websocket.send(encode(init_message(player_id, self.layout, others)))
        except Exception as e:
            logger.warning("Error sending initial data to %s: %s", player_id, e)
            if self.players.get(player_id) is player:
                self._drop(player)
            return None

        logger.info("Player joined: %s (%d online)", player_id, len(self.players))
        await self.broadcast(player_joined_message(player.to_record()), exclude=player_id)
        return player

    async def leave(self, player):
        if self.players.get(player.player_id) is not player:
            return False
        self._drop(player)
        logger.info("Player left: %s (%d online)", player.player_id, len(self.players))
        await self.broadcast(player_left_message(player.player_id))
        return True

    async def handle_frame(self, player, raw):
        if self.players.get(player.player_id) is not player:
            return
        try:
            message = parse_message(raw)
        except InvalidMessage as e:
            logger.debug("Dropped frame from %s: %s", player.player_id, e)
            return

        self._arm_timer(player)

        if isinstance(message, PingMessage):
            await self._safe_send(player.websocket, encode(pong_message()), player.player_id)
            return

        now = self.clock()
        if now - player.last_update < self.move_rate_limit:
            logger.debug("Throttled move from %s", player.player_id)
            return
        player.position = message.position
        player.rotation = message.rotation
        player.last_update = now

        if self.broadcast_mode == BROADCAST_PUSH:
            await self.broadcast(player_moved_message(player.player_id, player.position, player.rotation))

    # --- Snapshot Mode ---

    def snapshot(self):
        now = self.clock()
        fresh = [p.to_record() for p in self.players.values() if now - p.last_update < self.stale_after]
        return game_state_message(fresh, int(now * 1000))

    async def tick(self):
        await self.broadcast(self.snapshot())

# --- Main Server ---

class DungeonServer:
    def __init__(self, host=HOST, port=PORT, generator_config=None, seed=None,
                 broadcast_mode=BROADCAST_PUSH, connection_timeout=CONNECTION_TIMEOUT):
        self.host = host
        self.port = port
        self.broadcast_mode = broadcast_mode

        # One layout per process, shared by every session
        self.layout = DungeonGenerator(generator_config, random.Random(seed)).generate()
        logger.info("Generated dungeon: %d rooms, %d hallways", len(self.layout.rooms), len(self.layout.hallways))

        self.hub = SessionHub(self.layout, broadcast_mode=broadcast_mode, connection_timeout=connection_timeout)

    async def handler(self, websocket):
        remote = websocket.remote_address[0] if websocket.remote_address else "unknown"
        player = await self.hub.join(websocket)
        if player is None:
            return
        logger.info("New connection: %s(%s)", remote, player.player_id)

        try:
            async for message in websocket:
                await self.hub.handle_frame(player, message)
        except websockets.exceptions.ConnectionClosed:
            pass
        except Exception:
            logger.exception("Error processing messages from %s", player.player_id)
        finally:
            await self.hub.leave(player)
            logger.info("Connection closed: %s", player.player_id)

    async def game_loop(self):
        while True:
            start_t = time.time()
            await self.hub.tick()
            elapsed = time.time() - start_t
            sleep_t = max(0, TICK_DT_MS/1000.0 - elapsed)
            await asyncio.sleep(sleep_t)

    async def start(self):
        try:
            server = await websockets.serve(self.handler, self.host, self.port, ping_interval=20, ping_timeout=60)
        except OSError as e:
            raise SystemExit(f"Could not listen on ws://{self.host}:{self.port}: {e}")

        async with server:
            logger.info("Server started on ws://%s:%d (%s mode)", self.host, self.port, self.broadcast_mode)
            if self.broadcast_mode == BROADCAST_SNAPSHOT:
                await self.game_loop()
            else:
                await server.serve_forever()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Dungeon crawl multiplayer server")
    parser.add_argument("--host", type=str, default=HOST, help="Interface to listen on")
    parser.add_argument("--port", type=int, default=PORT, help="Port to listen on")
    parser.add_argument("--profile", choices=PROFILE_NAMES, default=PROFILE_SIMPLE, help="Dungeon generator profile")
    parser.add_argument("--rooms", type=int, default=None, help="Override the profile's room count")
    parser.add_argument("--seed", type=int, default=None, help="Seed for a reproducible dungeon")
    parser.add_argument("--broadcast-mode", choices=BROADCAST_MODES, default=BROADCAST_PUSH)
    parser.add_argument("--timeout", type=float, default=CONNECTION_TIMEOUT, help="Inactivity timeout in seconds")
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="[%(asctime)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    overrides = {}
    if args.rooms is not None:
        overrides["room_count"] = args.rooms
    try:
        config = GeneratorConfig.for_profile(args.profile, **overrides)
    except ValueError as e:
        raise SystemExit(f"Invalid dungeon configuration: {e}")

    server = DungeonServer(
        host=args.host,
        port=args.port,
        generator_config=config,
        seed=args.seed,
        broadcast_mode=args.broadcast_mode,
        connection_timeout=args.timeout,
    )
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Server stopped.")


if __name__ == "__main__":
    main()
