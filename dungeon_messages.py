"""Wire format for the dungeon server.

Inbound frames are decoded into one of a closed set of message types or
rejected with :class:`InvalidMessage`; nothing downstream ever sees a raw,
partially checked dict. Outbound frames are built by the ``*_message``
helpers and serialized with :func:`encode`.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Union

from dungeon_protocol import *


class InvalidMessage(ValueError):
    """Raised when an inbound frame is malformed or of an unknown type."""


@dataclass(frozen=True)
class Vector3:
    x: float
    y: float
    z: float

    @classmethod
    def from_dict(cls, raw: Any, field: str) -> "Vector3":
        if not isinstance(raw, dict):
            raise InvalidMessage(f"{field}: expected object")
        values = []
        for axis in ("x", "y", "z"):
            v = raw.get(axis)
            # bool is an int subclass but never a coordinate
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise InvalidMessage(f"{field}.{axis}: expected number")
            try:
                finite = math.isfinite(v)
            except OverflowError:
                finite = False
            if not finite:
                raise InvalidMessage(f"{field}.{axis}: not finite")
            values.append(v)
        return cls(*values)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


@dataclass(frozen=True)
class MoveMessage:
    position: Vector3
    rotation: Vector3


@dataclass(frozen=True)
class PingMessage:
    pass


InboundMessage = Union[MoveMessage, PingMessage]


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as e:
        raise InvalidMessage(f"not JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidMessage("expected object")
    mtype = data.get("type")
    if not isinstance(mtype, str):
        raise InvalidMessage("missing type")

    if mtype == MSG_PING:
        return PingMessage()

    if mtype == MSG_MOVE:
        payload = data.get("data")
        if not isinstance(payload, dict):
            raise InvalidMessage("data: expected object")
        return MoveMessage(
            position=Vector3.from_dict(payload.get("position"), "position"),
            rotation=Vector3.from_dict(payload.get("rotation"), "rotation"),
        )

    raise InvalidMessage(f"unknown type {mtype!r}")


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


# --- Outbound builders ---

def init_message(player_id, layout, players):
    return {
        "type": MSG_INIT,
        "data": {
            "playerId": player_id,
            "dungeon": layout.to_dict(),
            "players": players,
        },
    }


def player_joined_message(record):
    return {"type": MSG_PLAYER_JOINED, "data": record}


def player_moved_message(player_id, position, rotation):
    return {
        "type": MSG_PLAYER_MOVED,
        "data": {
            "id": player_id,
            "position": position.to_dict(),
            "rotation": rotation.to_dict(),
        },
    }


def player_left_message(player_id):
    return {"type": MSG_PLAYER_LEFT, "data": {"id": player_id}}


def game_state_message(players, now_ms):
    return {"type": MSG_GAME_STATE, "data": {"players": players, "lastUpdate": now_ms}}


def pong_message():
    return {"type": MSG_PONG}


# --- Client side ---

def move_message(position, rotation):
    return {
        "type": MSG_MOVE,
        "data": {"position": dict(position), "rotation": dict(rotation)},
    }


def ping_message():
    return {"type": MSG_PING}
