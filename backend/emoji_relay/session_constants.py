from __future__ import annotations

from .session_types import Phase, VoteCategory

STANDARD_MODE = "Standard"
EMOJI_ONLY_MODE = "Emoji Only"

STANDARD_PHASE_ORDER: tuple[Phase, ...] = (
    "text",
    "emoji_1",
    "interpretation_1",
    "emoji_2",
    "interpretation_2",
    "emoji_3",
)
EMOJI_ONLY_PHASE_ORDER: tuple[Phase, ...] = (
    "text",
    "emoji_1",
    "emoji_2",
    "emoji_3",
    "emoji_4",
    "emoji_5",
)
GAMEPLAY_PHASES: frozenset[Phase] = frozenset(STANDARD_PHASE_ORDER + EMOJI_ONLY_PHASE_ORDER)
ANSWER_PHASES: frozenset[Phase] = GAMEPLAY_PHASES | {"vote"}
NAVIGATIONAL_PHASES: frozenset[Phase] = frozenset({"vote", "scoreboard", "lobby", "winner"})
UNTIMED_PHASES: frozenset[Phase] = frozenset({"lobby", "reveal", "scoreboard", "winner"})
HOUSEKEEPING_PHASES: frozenset[Phase] = frozenset({"lobby", "scoreboard", "winner"})

PHASE_PRIORITY: dict[Phase, int] = {
    "lobby": 0,
    "text": 1,
    "emoji_1": 2,
    "interpretation_1": 3,
    "emoji_2": 4,
    "interpretation_2": 5,
    "emoji_3": 6,
    "emoji_4": 7,
    "emoji_5": 8,
    "reveal": 9,
    "vote": 10,
    "scoreboard": 11,
    "winner": 12,
}

TEXT_PREFIX = "text:"
EMOJI_PREFIX = "emoji:"
GUESS_PREFIX = "guess:"
VOTE_PREFIX = "vote:"
VOTE_MULTI_PREFIX = "vote_multi:"
DRAFT_TEXT_PREFIX = "draft:"
DRAFT_EMOJI_PREFIX = "draft_emoji:"
DRAFT_GUESS_PREFIX = "draft_guess:"
DRAFT_VOTE_PREFIX = "draft_vote:"
FINAL_PREFIXES: tuple[str, ...] = (
    VOTE_MULTI_PREFIX,
    VOTE_PREFIX,
    TEXT_PREFIX,
    EMOJI_PREFIX,
    GUESS_PREFIX,
)
DRAFT_PREFIXES: tuple[str, ...] = (
    DRAFT_EMOJI_PREFIX,
    DRAFT_GUESS_PREFIX,
    DRAFT_VOTE_PREFIX,
    DRAFT_TEXT_PREFIX,
)

VOTE_CATEGORIES: tuple[VoteCategory, VoteCategory, VoteCategory] = (
    "funniest",
    "mostAccurate",
    "mostDestroyed",
)
VOTE_POINTS: dict[str, int] = {
    "funniest": 1,
    "mostAccurate": 2,
    "mostDestroyed": -1,
}
VOTE_BUDGET_UNITS: dict[str, int] = {
    "funniest": 3,
    "mostAccurate": 1,
    "mostDestroyed": 1,
}
VOTE_BUDGET_STEP = 5

PLACEHOLDERS: dict[str, tuple[str, str]] = {
    "text": (
        "Too busy thinking of something brilliant! ✨",
        "Ghost writer took over! (Disconnected) 👻",
    ),
    "emoji": ("❓🤔✨", "👻❌❓"),
    "interpretation": (
        "Clearly a masterpiece, though my mind is blank! 🎨",
        "A mystery lost in the phantom realm... 🌫️",
    ),
}
GHOST_PLAYER_ID = "ghost_player"

ROOM_CODE_CHARS = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 4
ROOM_CODE_ATTEMPTS = 5
STALE_ROOM_MS = 4 * 60 * 60 * 1000

DEFAULT_ROUND_TIME_SECONDS = 60
DEFAULT_VOTE_DURATION_SECONDS = 30
DEFAULT_SCORE_TO_WIN = 5
PHASE_START_BUFFER_MS = 1000

MIN_PLAYERS_TO_START = 2
MIN_PLAYERS_TO_CONTINUE = 3
MIN_ACTIVE_PLAYERS = 2
SPECTATOR_MIN_PARTICIPANTS = 4

SPLIT_BRAIN_HOST_WEIGHT = 100
ONLINE_WINDOW_MS = 45_000

DEFAULT_PLAYER_NAME = "Player"
MAX_PLAYER_NAME_LENGTH = 24
DEFAULT_AVATAR = "🙂"

SETTINGS_KEYS = (
    "selectedMode",
    "roundTime",
    "voteDuration",
    "maxPlayers",
    "scoreToWin",
    "spectatorEnabled",
)
