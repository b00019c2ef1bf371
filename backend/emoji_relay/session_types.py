from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal, Mapping, Union

Phase = Literal[
    "lobby",
    "text",
    "emoji_1",
    "interpretation_1",
    "emoji_2",
    "interpretation_2",
    "emoji_3",
    "emoji_4",
    "emoji_5",
    "reveal",
    "vote",
    "scoreboard",
    "winner",
]
RoomStatus = Literal["lobby", "playing"]
VoteCategory = Literal["funniest", "mostAccurate", "mostDestroyed"]
TableName = Literal["rooms", "players", "game_state"]
ChangeKind = Literal["INSERT", "UPDATE", "DELETE"]
PresenceEventKind = Literal["join", "leave", "sync"]


def _split_avatar(token: str | None) -> tuple[str, str | None]:
    value = str(token or "")
    emoji, sep, fingerprint = value.partition("|")
    if not sep:
        return value, None
    return emoji, fingerprint or None


@dataclass
class RoomRecord:
    id: str
    room_code: str
    status: RoomStatus = "lobby"
    settings: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0
    revision: int = 0

    def copy(self) -> "RoomRecord":
        return copy.deepcopy(self)


@dataclass
class PlayerRecord:
    id: str
    room_id: str
    name: str
    avatar: str = ""
    is_host: bool = False
    score: int = 0
    votes_used: dict[str, int] = field(default_factory=dict)
    last_answer: str | None = None
    last_seen: int = 0
    created_at: int = 0
    revision: int = 0

    @property
    def fingerprint(self) -> str | None:
        return _split_avatar(self.avatar)[1]

    @property
    def display_avatar(self) -> str:
        return _split_avatar(self.avatar)[0]

    def copy(self) -> "PlayerRecord":
        return copy.deepcopy(self)


@dataclass
class GameStateRecord:
    room_id: str
    phase: Phase = "lobby"
    phase_expiry: int | None = None
    timer: int = 0
    revision: int = 0

    def copy(self) -> "GameStateRecord":
        return copy.deepcopy(self)


AnyRecord = Union[RoomRecord, PlayerRecord, GameStateRecord]


@dataclass(frozen=True)
class ChangeEvent:
    table: TableName
    kind: ChangeKind
    record_id: str
    room_id: str
    new: AnyRecord | None = None
    old: AnyRecord | None = None


@dataclass(frozen=True)
class PresenceMeta:
    player_id: str
    is_away: bool = False
    online_at: int = 0


@dataclass(frozen=True)
class PresenceEvent:
    kind: PresenceEventKind
    members: Mapping[str, PresenceMeta]
    changed: tuple[str, ...] = ()


@dataclass(frozen=True)
class Notification:
    key: str
    message: str
    kind: str
    created_at: int


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable copy of one client's mirror, handed to scheduled tasks."""

    room: RoomRecord | None
    players: tuple[PlayerRecord, ...]
    game_state: GameStateRecord | None
    presence: Mapping[str, PresenceMeta]
    my_player_id: str | None
    taken_at: int

    @classmethod
    def capture(
        cls,
        *,
        room: RoomRecord | None,
        players: list[PlayerRecord],
        game_state: GameStateRecord | None,
        presence: Mapping[str, PresenceMeta],
        my_player_id: str | None,
        taken_at: int,
    ) -> "SessionSnapshot":
        ordered = sorted(players, key=lambda item: (item.created_at, item.id))
        return cls(
            room=room.copy() if room is not None else None,
            players=tuple(player.copy() for player in ordered),
            game_state=game_state.copy() if game_state is not None else None,
            presence=MappingProxyType(dict(presence)),
            my_player_id=my_player_id,
            taken_at=taken_at,
        )

    @property
    def phase(self) -> Phase:
        if self.game_state is None:
            return "lobby"
        return self.game_state.phase

    @property
    def settings(self) -> dict[str, Any]:
        if self.room is None:
            return {}
        return self.room.settings

    @property
    def player_order(self) -> list[str]:
        return [str(pid) for pid in self.settings.get("player_order") or []]

    @property
    def me(self) -> PlayerRecord | None:
        if self.my_player_id is None:
            return None
        return self.player(self.my_player_id)

    @property
    def is_host(self) -> bool:
        me = self.me
        return bool(me and me.is_host)

    def player(self, player_id: str) -> PlayerRecord | None:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def players_by_id(self) -> dict[str, PlayerRecord]:
        return {player.id: player for player in self.players}

    def is_online(self, player_id: str) -> bool:
        # An empty presence set means presence has not synced yet.
        if not self.presence:
            return True
        return player_id in self.presence

    def is_away(self, player_id: str) -> bool:
        meta = self.presence.get(player_id)
        return bool(meta and meta.is_away)

    def online_ids(self) -> set[str]:
        return {player.id for player in self.players if self.is_online(player.id)}

    def online_players(self) -> list[PlayerRecord]:
        return [player for player in self.players if self.is_online(player.id)]

    def hosts(self) -> list[PlayerRecord]:
        return [player for player in self.players if player.is_host]
