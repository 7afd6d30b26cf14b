import random
from collections import deque
from dataclasses import dataclass, replace

import numpy as np

from dungeon_protocol import PLAYER_HEIGHT

# --- Layout Geometry ---

PROFILE_SIMPLE = "simple"
PROFILE_DENSE = "dense"
PROFILE_NAMES = (PROFILE_SIMPLE, PROFILE_DENSE)

DIRECTIONS = ("north", "south", "east", "west")
OPPOSITE = {"north": "south", "south": "north", "east": "west", "west": "east"}
# Unit step on the (x, z) floor plane. North points towards -z.
STEP = {"north": (0, -1), "south": (0, 1), "east": (1, 0), "west": (-1, 0)}


@dataclass(frozen=True)
class GeneratorConfig:
    """Size budget and placement rules for one generation run.

    ``room_spacing`` is the gap between two connected rooms; a hallway fills
    it. The same value expands every footprint during the overlap test.
    """
    room_size: float = 30
    room_spacing: float = 12
    hallway_width: float = 4
    hallway_height: float = 3
    door_width: float = 4
    room_height: float = 3
    room_count: int = 8
    max_attempts: int = 2000
    profile: str = PROFILE_SIMPLE

    def __post_init__(self):
        if self.profile not in PROFILE_NAMES:
            raise ValueError(f"unknown generator profile: {self.profile!r}")
        for name in ("room_size", "hallway_width", "hallway_height", "door_width", "room_height"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.room_spacing < 0:
            raise ValueError("room_spacing must not be negative")
        if self.hallway_width > self.room_size or self.door_width > self.room_size:
            raise ValueError("hallway and door must fit inside a room wall")
        if self.room_count < 1:
            raise ValueError("room_count must be at least 1")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must not be negative")

    @property
    def stride(self):
        return self.room_size + self.room_spacing

    @classmethod
    def for_profile(cls, profile, **overrides):
        if profile not in PROFILES:
            raise ValueError(f"unknown generator profile: {profile!r}")
        return replace(PROFILES[profile], **overrides)


PROFILES = {}
PROFILES[PROFILE_SIMPLE] = GeneratorConfig()
PROFILES[PROFILE_DENSE] = GeneratorConfig(
    room_size=72,
    room_spacing=48,
    hallway_width=9,
    door_width=6,
    room_count=15,
    profile=PROFILE_DENSE,
)


class Room:
    def __init__(self, x, z, size, height):
        self.x = x
        self.y = 0
        self.z = z
        self.size = size
        self.height = height
        # Doors are cut into walls, so every wall stays standing.
        self.walls = {d: True for d in DIRECTIONS}
        self.doors = {d: False for d in DIRECTIONS}

    @property
    def center(self):
        return (self.x + self.size / 2, self.z + self.size / 2)

    def door_count(self):
        return sum(1 for open_ in self.doors.values() if open_)

    def open_door(self, direction):
        self.doors[direction] = True
        self.walls[direction] = True

    def to_dict(self):
        return {
            "x": self.x,
            "y": self.y,
            "z": self.z,
            "size": self.size,
            "height": self.height,
            "walls": dict(self.walls),
            "doors": dict(self.doors),
        }

    def __repr__(self):
        return f"Room(x={self.x}, z={self.z}, doors={self.door_count()})"


class Hallway:
    def __init__(self, x, z, width, depth, height, direction):
        self.x = x
        self.y = 0
        self.z = z
        self.width = width
        self.depth = depth
        self.height = height
        self.direction = direction
        self.left_wall = True
        self.right_wall = True

    def to_dict(self):
        return {
            "x": self.x,
            "y": self.y,
            "z": self.z,
            "width": self.width,
            "height": self.height,
            "depth": self.depth,
            "direction": self.direction,
            "leftWall": self.left_wall,
            "rightWall": self.right_wall,
        }

    def __repr__(self):
        return f"Hallway(x={self.x}, z={self.z}, {self.width}x{self.depth}, {self.direction})"


class Layout:
    """Rooms, hallways and spawn point produced by one generation run.

    ``connections`` holds ``(source_index, target_index, direction)`` for every
    door pair, in creation order; ``hallways[i]`` belongs to ``connections[i]``.
    """

    def __init__(self, rooms, hallways, connections, spawn_point):
        self.rooms = rooms
        self.hallways = hallways
        self.connections = connections
        self.spawn_point = spawn_point

    def neighbors(self):
        graph = {i: set() for i in range(len(self.rooms))}
        for a, b, _ in self.connections:
            graph[a].add(b)
            graph[b].add(a)
        return graph

    def reachable_from(self, index=0):
        graph = self.neighbors()
        seen = {index}
        queue = deque([index])
        while queue:
            current = queue.popleft()
            for nxt in graph[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return seen

    def is_connected(self):
        return len(self.reachable_from(0)) == len(self.rooms)

    def to_dict(self):
        return {
            "rooms": [r.to_dict() for r in self.rooms],
            "hallways": [h.to_dict() for h in self.hallways],
        }


class DungeonGenerator:
    """Grows a connected room graph outwards from a seed room at the origin.

    Every room after the first is placed by a connection from a room that is
    already in the layout, so the result is always connected. Running out of
    attempts is not an error: whatever has been built so far is returned.
    """

    def __init__(self, config=None, rng=None):
        self.config = config or GeneratorConfig()
        self.rng = rng or random.Random()
        self.rooms = []
        self.hallways = []
        self.connections = []

    def generate(self):
        cfg = self.config
        self.rooms = []
        self.hallways = []
        self.connections = []

        first = self._create_room(0, 0)
        self.rooms.append(first)
        cx, cz = first.center
        spawn_point = {"x": cx, "y": PLAYER_HEIGHT, "z": cz}

        attempts = 0
        while len(self.rooms) < cfg.room_count and attempts < cfg.max_attempts:
            attempts += 1
            if cfg.profile == PROFILE_DENSE:
                self._grow_dense()
            else:
                self._grow_simple()

        return Layout(self.rooms, self.hallways, self.connections, spawn_point)

    # --- Profiles ---

    def _grow_simple(self):
        source = self.rng.choice(range(len(self.rooms)))
        direction = self.rng.choice(DIRECTIONS)
        self._try_place(source, direction)

    def _grow_dense(self):
        source = self._pick_source_dense()
        if source is None:
            return
        directions = list(DIRECTIONS)
        self.rng.shuffle(directions)
        for direction in directions:
            if self.rooms[source].doors[direction]:
                continue
            placed = self._try_place(source, direction)
            if placed is not None:
                self._backfill_adjacent(placed)
                return

    def _pick_source_dense(self):
        candidates = [i for i, r in enumerate(self.rooms) if r.door_count() < len(DIRECTIONS)]
        if not candidates:
            return None
        doors = np.array([self.rooms[i].door_count() for i in candidates])
        dist = np.hypot([self.rooms[i].x for i in candidates], [self.rooms[i].z for i in candidates])
        # Fewest doors first, then farthest from the origin; lexsort is stable.
        order = np.lexsort((-dist, doors))
        return candidates[int(order[0])]

    # --- Placement ---

    def _try_place(self, source_index, direction):
        source = self.rooms[source_index]
        dx, dz = STEP[direction]
        x = source.x + dx * self.config.stride
        z = source.z + dz * self.config.stride
        if self._overlaps_existing(x, z):
            return None

        self.rooms.append(self._create_room(x, z))
        new_index = len(self.rooms) - 1
        self._connect(source_index, new_index, direction)
        return new_index

    def _overlaps_existing(self, x, z):
        origins = np.array([(r.x, r.z) for r in self.rooms], dtype=float)
        close = np.abs(origins - (x, z)) < self.config.stride
        # Overlap on one axis alone is fine; both axes must overlap.
        return bool(np.any(close.all(axis=1)))

    def _backfill_adjacent(self, index):
        room = self.rooms[index]
        stride = self.config.stride
        linked = {b for a, b, _ in self.connections if a == index}
        linked |= {a for a, b, _ in self.connections if b == index}
        for other_index, other in enumerate(self.rooms):
            if other_index == index or other_index in linked:
                continue
            for direction, (dx, dz) in STEP.items():
                if np.isclose(other.x - room.x, dx * stride) and np.isclose(other.z - room.z, dz * stride):
                    self._connect(index, other_index, direction)
                    break

    def _connect(self, a_index, b_index, direction):
        a = self.rooms[a_index]
        b = self.rooms[b_index]
        a.open_door(direction)
        b.open_door(OPPOSITE[direction])
        self.hallways.append(self._create_hallway(a, b, direction))
        self.connections.append((a_index, b_index, direction))

    def _create_room(self, x, z):
        return Room(x, z, self.config.room_size, self.config.room_height)

    def _create_hallway(self, a, b, direction):
        cfg = self.config
        size = cfg.room_size
        if direction in ("east", "west"):
            min_x = min(a.x, b.x)
            x = min_x + size
            z = min(a.z, b.z) + size / 2 - cfg.hallway_width / 2
            width = max(a.x, b.x) - min_x - size
            depth = cfg.hallway_width
            axis = "horizontal"
        else:
            min_z = min(a.z, b.z)
            x = min(a.x, b.x) + size / 2 - cfg.hallway_width / 2
            z = min_z + size
            width = cfg.hallway_width
            depth = max(a.z, b.z) - min_z - size
            axis = "vertical"
        tag = direction if cfg.profile == PROFILE_DENSE else axis
        return Hallway(x, z, width, depth, cfg.hallway_height, tag)


def generate_layout(config=None, seed=None):
    return DungeonGenerator(config, random.Random(seed)).generate()
