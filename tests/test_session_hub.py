import asyncio
import json
import logging
import uuid

import pytest

from dungeon_generator import GeneratorConfig, generate_layout
from dungeon_protocol import BROADCAST_SNAPSHOT, PLAYER_HEIGHT
import dungeon_server
from dungeon_server import SessionHub


class FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.closed = False
        self.fail = fail

    async def send(self, payload):
        if self.fail:
            raise ConnectionError("peer went away")
        self.sent.append(json.loads(payload))

    async def close(self):
        self.closed = True

    def of_type(self, mtype):
        return [m for m in self.sent if m["type"] == mtype]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def move_frame(x=1.0, y=PLAYER_HEIGHT, z=2.0, yaw=0.5):
    return json.dumps({
        "type": "move",
        "data": {"position": {"x": x, "y": y, "z": z}, "rotation": {"x": 0, "y": yaw, "z": 0}},
    })


@pytest.fixture
def layout():
    return generate_layout(GeneratorConfig(room_count=4), seed=9)


def make_hub(layout, **kwargs):
    kwargs.setdefault("clock", FakeClock())
    return SessionHub(layout, **kwargs)


def test_first_player_gets_init_with_empty_player_list(layout):
    async def scenario():
        hub = make_hub(layout)
        ws = FakeWebSocket()
        player = await hub.join(ws)
        assert ws.sent[0]["type"] == "init"
        data = ws.sent[0]["data"]
        assert data["playerId"] == player.player_id
        assert data["players"] == []
        assert len(data["dungeon"]["rooms"]) == 4
        assert player.position.to_dict() == layout.spawn_point
        assert player.rotation.to_dict() == {"x": 0, "y": 0, "z": 0}
        # No one else to tell
        assert ws.of_type("playerJoined") == []
        await hub.leave(player)

    asyncio.run(scenario())


def test_second_player_sees_first_and_first_is_told(layout):
    async def scenario():
        hub = make_hub(layout)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        p2 = await hub.join(ws2)

        init2 = ws2.sent[0]["data"]
        assert [p["id"] for p in init2["players"]] == [p1.player_id]
        joined = ws1.of_type("playerJoined")
        assert len(joined) == 1
        assert joined[0]["data"]["id"] == p2.player_id
        assert joined[0]["data"]["position"] == layout.spawn_point
        assert ws2.of_type("playerJoined") == []
        for p in (p1, p2):
            await hub.leave(p)

    asyncio.run(scenario())


def test_move_is_throttled_per_participant(layout):
    async def scenario():
        clock = FakeClock(1000.0)
        hub = make_hub(layout, clock=clock)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        p2 = await hub.join(ws2)

        clock.now = 1000.05
        await hub.handle_frame(p1, move_frame(x=5))
        assert p1.position.to_dict() == layout.spawn_point
        assert ws2.of_type("playerMoved") == []

        clock.now = 1000.1
        await hub.handle_frame(p1, move_frame(x=5))
        assert p1.position.x == 5
        assert p1.last_update == 1000.1

        # Broadcast goes to everyone, the mover included
        for ws in (ws1, ws2):
            moved = ws.of_type("playerMoved")
            assert len(moved) == 1
            assert moved[0]["data"] == {
                "id": p1.player_id,
                "position": {"x": 5, "y": PLAYER_HEIGHT, "z": 2.0},
                "rotation": {"x": 0, "y": 0.5, "z": 0},
            }

        # p2 has its own window
        await hub.handle_frame(p2, move_frame(x=7))
        assert p2.position.x == 7

        clock.now = 1000.15
        await hub.handle_frame(p1, move_frame(x=9))
        assert p1.position.x == 5
        assert len(ws2.of_type("playerMoved")) == 2
        for p in (p1, p2):
            await hub.leave(p)

    asyncio.run(scenario())


@pytest.mark.parametrize(
    "raw",
    [
        json.dumps({"type": "move", "data": {"position": {"x": 1, "y": 2, "z": 3}}}),
        json.dumps({"type": "move", "data": {"position": {"x": "a", "y": 2, "z": 3}, "rotation": {"x": 0, "y": 0, "z": 0}}}),
        json.dumps({"type": "dance"}),
        "garbage",
    ],
)
def test_invalid_frames_do_not_mutate_or_broadcast(layout, raw):
    async def scenario():
        clock = FakeClock()
        hub = make_hub(layout, clock=clock)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        p2 = await hub.join(ws2)
        before = (len(ws1.sent), len(ws2.sent))
        clock.now += 1

        await hub.handle_frame(p1, raw)

        assert p1.position.to_dict() == layout.spawn_point
        assert p1.last_update == 1000.0
        assert (len(ws1.sent), len(ws2.sent)) == before
        for p in (p1, p2):
            await hub.leave(p)

    asyncio.run(scenario())


def test_ping_answers_sender_only(layout):
    async def scenario():
        hub = make_hub(layout)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        p2 = await hub.join(ws2)
        before = len(ws2.sent)

        await hub.handle_frame(p1, json.dumps({"type": "ping"}))

        assert ws1.sent[-1] == {"type": "pong"}
        assert len(ws2.sent) == before
        for p in (p1, p2):
            await hub.leave(p)

    asyncio.run(scenario())


def test_deeply_nested_frame_keeps_sender_registered(layout):
    async def scenario():
        hub = make_hub(layout)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        p2 = await hub.join(ws2)
        before = (len(ws1.sent), len(ws2.sent))

        await hub.handle_frame(p1, "[" * 100000 + "]" * 100000)

        assert hub.players[p1.player_id] is p1
        assert (len(ws1.sent), len(ws2.sent)) == before
        await hub.handle_frame(p1, json.dumps({"type": "ping"}))
        assert ws1.sent[-1] == {"type": "pong"}
        for p in (p1, p2):
            await hub.leave(p)

    asyncio.run(scenario())


def test_leave_announces_once(layout):
    async def scenario():
        hub = make_hub(layout)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        p2 = await hub.join(ws2)

        assert await hub.leave(p1) is True
        assert await hub.leave(p1) is False

        assert ws2.of_type("playerLeft") == [{"type": "playerLeft", "data": {"id": p1.player_id}}]
        assert p1.player_id not in hub.players
        assert p1.timer is None

        # Frames from a removed participant are ignored
        await hub.handle_frame(p1, move_frame())
        assert ws2.of_type("playerMoved") == []

        ws3 = FakeWebSocket()
        p3 = await hub.join(ws3)
        assert [p["id"] for p in ws3.sent[0]["data"]["players"]] == [p2.player_id]
        assert p3.player_id != p1.player_id
        for p in (p2, p3):
            await hub.leave(p)

    asyncio.run(scenario())


def test_failed_send_does_not_stop_broadcast(layout, caplog):
    async def scenario():
        clock = FakeClock()
        hub = make_hub(layout, clock=clock)
        ws1, ws2, ws3 = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        p2 = await hub.join(ws2)
        p3 = await hub.join(ws3)
        ws2.fail = True
        clock.now += 1

        await hub.handle_frame(p1, move_frame(x=3))

        assert len(ws1.of_type("playerMoved")) == 1
        assert len(ws3.of_type("playerMoved")) == 1
        assert p1.position.x == 3
        for p in (p1, p2, p3):
            await hub.leave(p)

    with caplog.at_level(logging.WARNING, logger="dungeon_server"):
        asyncio.run(scenario())
    assert any("failed" in r.getMessage() for r in caplog.records)


def test_failed_init_send_drops_player_silently(layout):
    async def scenario():
        hub = make_hub(layout)
        ws1 = FakeWebSocket()
        p1 = await hub.join(ws1)
        assert await hub.join(FakeWebSocket(fail=True)) is None
        assert list(hub.players) == [p1.player_id]
        assert ws1.of_type("playerJoined") == []
        await hub.leave(p1)

    asyncio.run(scenario())


def test_inactive_connection_is_closed_and_announced(layout):
    async def scenario():
        hub = make_hub(layout, connection_timeout=0.2)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        await asyncio.sleep(0.1)
        p2 = await hub.join(ws2)
        await asyncio.sleep(0.15)

        assert ws1.closed
        assert p1.player_id not in hub.players
        assert ws2.of_type("playerLeft") == [{"type": "playerLeft", "data": {"id": p1.player_id}}]
        assert not ws2.closed
        await hub.leave(p2)

    asyncio.run(scenario())


def test_accepted_frames_rearm_timer(layout):
    async def scenario():
        clock = FakeClock()
        hub = make_hub(layout, clock=clock, connection_timeout=0.2)
        ws = FakeWebSocket()
        player = await hub.join(ws)
        await asyncio.sleep(0.12)
        await hub.handle_frame(player, json.dumps({"type": "ping"}))
        await asyncio.sleep(0.12)
        # A throttled move still counts as activity
        await hub.handle_frame(player, move_frame())
        await asyncio.sleep(0.12)
        assert not ws.closed
        assert player.player_id in hub.players
        await hub.leave(player)

    asyncio.run(scenario())


def test_rejected_frames_do_not_rearm_timer(layout):
    async def scenario():
        hub = make_hub(layout, connection_timeout=0.2)
        ws = FakeWebSocket()
        player = await hub.join(ws)
        await asyncio.sleep(0.12)
        await hub.handle_frame(player, "{broken")
        await asyncio.sleep(0.15)
        assert ws.closed
        assert player.player_id not in hub.players

    asyncio.run(scenario())


def test_snapshot_mode_batches_moves_into_game_state(layout):
    async def scenario():
        clock = FakeClock(1000.0)
        hub = make_hub(layout, clock=clock, broadcast_mode=BROADCAST_SNAPSHOT, stale_after=5.0)
        ws1, ws2 = FakeWebSocket(), FakeWebSocket()
        p1 = await hub.join(ws1)
        clock.now = 1003.0
        p2 = await hub.join(ws2)
        clock.now = 1004.0
        await hub.handle_frame(p2, move_frame(x=4))
        assert ws1.of_type("playerMoved") == []
        assert p2.position.x == 4

        clock.now = 1006.0
        await hub.tick()
        for ws in (ws1, ws2):
            state = ws.of_type("gameState")[-1]["data"]
            # p1 has been silent for six seconds
            assert [p["id"] for p in state["players"]] == [p2.player_id]
            assert state["players"][0]["position"]["x"] == 4
            assert state["lastUpdate"] == 1006000
        for p in (p1, p2):
            await hub.leave(p)

    asyncio.run(scenario())


def test_player_ids_are_unique(layout):
    async def scenario():
        hub = make_hub(layout)
        players = [await hub.join(FakeWebSocket()) for _ in range(50)]
        assert len({p.player_id for p in players}) == 50
        for p in players:
            await hub.leave(p)

    asyncio.run(scenario())


def test_colliding_id_is_redrawn_and_departed_ids_are_forgotten(layout, monkeypatch):
    draws = iter([
        uuid.UUID("aaaaaaaa-0000-4000-8000-000000000001"),
        uuid.UUID("aaaaaaaa-0000-4000-8000-000000000002"),
        uuid.UUID("bbbbbbbb-0000-4000-8000-000000000003"),
        uuid.UUID("aaaaaaaa-0000-4000-8000-000000000004"),
    ])
    monkeypatch.setattr(dungeon_server.uuid, "uuid4", lambda: next(draws))

    async def scenario():
        hub = make_hub(layout)
        p1 = await hub.join(FakeWebSocket())
        p2 = await hub.join(FakeWebSocket())
        assert (p1.player_id, p2.player_id) == ("aaaaaaaa", "bbbbbbbb")

        # Once its owner is gone the id may be handed out again
        await hub.leave(p1)
        p3 = await hub.join(FakeWebSocket())
        assert p3.player_id == "aaaaaaaa"
        assert set(hub.players) == {"aaaaaaaa", "bbbbbbbb"}
        for p in (p2, p3):
            await hub.leave(p)

    asyncio.run(scenario())


def test_unknown_broadcast_mode_rejected(layout):
    with pytest.raises(ValueError):
        SessionHub(layout, broadcast_mode="carrier-pigeon")
