from __future__ import annotations


class SessionError(RuntimeError):
    code = "sessionError"
    terminal = False


class TerminalSessionError(SessionError):
    """Ends the session: tokens for the room are purged and auto-reconnect stops."""

    terminal = True


class RoomNotFound(TerminalSessionError):
    code = "roomNotFound"


class RoomFull(TerminalSessionError):
    code = "roomFull"


class Kicked(TerminalSessionError):
    code = "kickedError"


class AfkTimeout(TerminalSessionError):
    code = "afkTimeout"


class TransientSessionError(SessionError):
    pass


class ConnectionTimeout(TransientSessionError):
    code = "connectionTimeout"


class SplitBrainConflict(TransientSessionError):
    code = "splitBrainConflict"

    def __init__(self, room_code: str, room_ids: list[str]) -> None:
        super().__init__(f"{len(room_ids)} rooms answer to code {room_code}")
        self.room_code = room_code
        self.room_ids = list(room_ids)


class StaleWriteConflict(TransientSessionError):
    code = "staleWriteConflict"
