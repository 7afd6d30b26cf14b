import asyncio
import json
import logging
import threading
import queue
import time
import websockets
from dungeon_protocol import *
from dungeon_messages import move_message, ping_message

logger = logging.getLogger(__name__)


class DungeonClient:
    """Headless client for the dungeon server.

    The network side runs its own event loop on a daemon thread; callers on
    other threads enqueue outgoing messages and read a copy of the state.
    """

    def __init__(self, keep_alive_interval=KEEP_ALIVE_INTERVAL):
        self.ws = None
        self.loop = None
        self.thread = None
        self.running = False
        self.keep_alive_interval = keep_alive_interval

        self.state_lock = threading.Lock()

        self.my_id = None
        self.dungeon = None
        self.players = {} # id -> {position, rotation}
        self.last_pong = None
        self.last_message_time = time.time()

        self.msg_queue = queue.Queue() # For sending out from Main Thread

    def connect_and_start(self, uri):
        self.running = True
        self.thread = threading.Thread(target=self._run_loop, args=(uri,), daemon=True)
        self.thread.start()

    def _run_loop(self, uri):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.loop.run_until_complete(self._async_connect(uri))

    async def _async_connect(self, uri):
        try:
            async with websockets.connect(uri) as ws:
                self.ws = ws
                send_task = asyncio.create_task(self._sender(ws))
                ping_task = asyncio.create_task(self._keep_alive())

                try:
                    async for message in ws:
                        await self._handle_message(message)
                except websockets.exceptions.ConnectionClosed:
                    logger.info("Connection closed")
                finally:
                    send_task.cancel()
                    ping_task.cancel()

        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error("Connection error: %s", e)
        finally:
            self.running = False

    async def _sender(self, ws):
        while True:
            try:
                while not self.msg_queue.empty():
                    msg = self.msg_queue.get()
                    await ws.send(json.dumps(msg))
                await asyncio.sleep(0.01)
            except asyncio.CancelledError:
                break
            except websockets.exceptions.ConnectionClosed as e:
                logger.warning("Sender stopped: %s", e)
                break

    async def _keep_alive(self):
        # The server drops connections that stay silent, even idle ones.
        while True:
            await asyncio.sleep(self.keep_alive_interval)
            self.msg_queue.put(ping_message())

    async def _handle_message(self, message):
        try:
            data = json.loads(message)
        except (ValueError, RecursionError):
            logger.warning("Ignoring non-JSON frame")
            return
        if not isinstance(data, dict):
            return
        mtype = data.get("type")
        payload = data.get("data") or {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring %s frame with bad payload", mtype)
            return

        with self.state_lock:
            self.last_message_time = time.time()

            if mtype == MSG_INIT:
                player_id = payload.get("playerId")
                if not isinstance(player_id, str):
                    logger.warning("Ignoring init frame without playerId")
                    return
                self.my_id = player_id
                self.dungeon = payload.get("dungeon")
                self.players = dict(self._peers(payload.get("players")))

            elif mtype in (MSG_PLAYER_JOINED, MSG_PLAYER_MOVED):
                entry = _peer_entry(payload)
                # Our own moves are echoed back; local state already has them.
                if entry is not None and entry[0] != self.my_id:
                    self.players[entry[0]] = entry[1]

            elif mtype == MSG_PLAYER_LEFT:
                pid = payload.get("id")
                if isinstance(pid, str):
                    self.players.pop(pid, None)

            elif mtype == MSG_GAME_STATE:
                if isinstance(payload.get("players"), list):
                    self.players = dict(self._peers(payload["players"]))

            elif mtype == MSG_PONG:
                self.last_pong = self.last_message_time

    def _peers(self, records):
        if not isinstance(records, list):
            return
        for record in records:
            entry = _peer_entry(record)
            if entry is not None and entry[0] != self.my_id:
                yield entry

    def send_move(self, position, rotation):
        self.msg_queue.put(move_message(position, rotation))

    def send_ping(self):
        self.msg_queue.put(ping_message())

    def stop(self):
        self.running = False
        if self.loop and self.ws:
            asyncio.run_coroutine_threadsafe(self.ws.close(), self.loop)

    def get_render_state(self):
        with self.state_lock:
            return {
                "my_id": self.my_id,
                "dungeon": self.dungeon,
                "players": {pid: dict(info) for pid, info in self.players.items()},
                "last_pong": self.last_pong,
            }


def _peer_entry(record):
    if not isinstance(record, dict):
        return None
    pid = record.get("id")
    if not isinstance(pid, str):
        return None
    return pid, {"position": record.get("position"), "rotation": record.get("rotation")}
