from __future__ import annotations

import asyncio

import pytest

from emoji_relay import session_reconnect
from emoji_relay.session_errors import Kicked, RoomFull, RoomNotFound
from emoji_relay.session_reconnect import SessionTokenStore, is_banned
from emoji_relay.session_utils import encode_avatar, now_ms


def test_token_store_persists_to_disk(tmp_path):
    path = tmp_path / "state" / "tokens.json"
    tokens = SessionTokenStore(path)
    tokens.set("ABCD", "room-1", "player-1")
    tokens.mark_explicit_leave("WXYZ")

    reloaded = SessionTokenStore(path)
    assert reloaded.get("ABCD") == {"roomId": "room-1", "playerId": "player-1"}
    assert reloaded.has_explicit_leave("WXYZ")

    reloaded.purge("ABCD")
    reloaded.clear_explicit_leave("WXYZ")
    again = SessionTokenStore(path)
    assert again.get("ABCD") is None
    assert not again.has_explicit_leave("WXYZ")


def test_unreadable_token_file_is_ignored(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text("{not json", encoding="utf-8")
    assert SessionTokenStore(path).get("ABCD") is None


def test_ban_matches_normalized_name_or_fingerprint():
    settings = {"kicked_names": ["Bob"], "kicked_fingerprints": ["fp-1"]}
    assert is_banned(settings, "  bob ", None)
    assert is_banned(settings, "Someone", "fp-1")
    assert not is_banned(settings, "Carol", "fp-2")
    assert not is_banned({}, "Bob", "fp-1")


@pytest.mark.asyncio
async def test_create_room_makes_host_and_lobby(make_session, store):
    host = make_session()
    code = await host.create_room("Alice", "🐱")
    assert code and len(code) == 4
    room = store.rooms[host.room_id]
    assert room.room_code == code
    assert room.settings["maxPlayers"] == 8
    assert store.game_states[room.id].phase == "lobby"
    me = store.players[host.my_player_id]
    assert me.is_host
    assert me.display_avatar == "🐱"
    assert me.fingerprint == host.fingerprint
    assert host.tokens.get(code) == {"roomId": room.id, "playerId": me.id}


@pytest.mark.asyncio
async def test_create_room_reclaims_only_stale_codes(make_session, store, monkeypatch):
    monkeypatch.setattr(session_reconnect, "random_room_code", lambda: "ABCD")
    stale = await store.create_room("ABCD", {})
    store.rooms[stale.id].created_at = 0

    host = make_session()
    assert await host.create_room("Alice", "🐱") == "ABCD"
    assert stale.id not in store.rooms

    other = make_session()
    assert await other.create_room("Bob", "🐶") is None
    assert other.room is None


@pytest.mark.asyncio
async def test_old_room_still_in_play_is_not_reclaimed(make_session, store, monkeypatch):
    monkeypatch.setattr(session_reconnect, "random_room_code", lambda: "ABCD")
    old = await store.create_room("ABCD", {}, status="playing")
    store.rooms[old.id].created_at = 0
    await store.create_player(old.id, name="Marathon", avatar="🐢", last_seen=now_ms())

    host = make_session()
    assert await host.create_room("Alice", "🐱") is None
    assert old.id in store.rooms
    assert await session_reconnect.is_room_stale(store, store.rooms[old.id], now_ms()) is False


@pytest.mark.asyncio
async def test_join_unknown_code_reports_room_not_found(make_session):
    errors = []
    session = make_session()
    session.add_error_listener(errors.append)
    assert not await session.join_room("ZZZZ", "Bob", "🐶")
    assert isinstance(session.error, RoomNotFound)
    assert errors == [session.error]
    assert session.tokens.has_explicit_leave("ZZZZ")


@pytest.mark.asyncio
async def test_join_gets_unique_name(trio, make_session, settle):
    host, _, _ = trio
    dave = make_session()
    assert await dave.join_room(host.room.room_code, "bob", "🐸")
    me = next(player for player in dave.players if player.id == dave.my_player_id)
    assert me.name == "bob (2)"
    assert not me.is_host


@pytest.mark.asyncio
async def test_room_full(make_session, store, settle):
    host = make_session()
    code = await host.create_room("Alice", "🐱")
    store.rooms[host.room_id].settings["maxPlayers"] = 2
    bob = make_session()
    assert await bob.join_room(code, "Bob", "🐶")
    carol = make_session()
    assert not await carol.join_room(code, "Carol", "🦊")
    assert isinstance(carol.error, RoomFull)


@pytest.mark.asyncio
async def test_token_restore_keeps_player_id(trio, store, settle):
    host, bob, _ = trio
    code = host.room.room_code
    player_id = bob.my_player_id
    await bob.close()
    assert await bob.join_room(code, "Robert", "🐶")
    assert bob.my_player_id == player_id
    assert store.players[player_id].name == "Robert"
    assert len(store.players) == 3


@pytest.mark.asyncio
async def test_fingerprint_restore_removes_ghost_rows(trio, make_session, store, settle):
    host, _, _ = trio
    code = host.room.room_code
    first = make_session(fingerprint="fp-dave")
    assert await first.join_room(code, "Dave", "🐸")
    original_id = first.my_player_id
    ghost = await store.create_player(host.room_id, name="Dave old", avatar=encode_avatar("🐸", "fp-dave"), last_seen=1)
    await first.close()

    second = make_session(fingerprint="fp-dave")
    assert await second.join_room(code, "Dave", "🐸")
    assert second.my_player_id == original_id
    assert ghost.id not in store.players
    assert [p.id for p in store.players.values() if p.fingerprint == "fp-dave"] == [original_id]


@pytest.mark.asyncio
async def test_stale_token_blocks_auto_reconnect(trio, make_session):
    host, _, _ = trio
    code = host.room.room_code
    session = make_session()
    session.tokens.set(code, "another-room", "someone")
    assert not await session.join_room(code, "Eve", "🐙", auto_reconnect=True)
    assert session.tokens.get(code) is None
    assert session.room is None


@pytest.mark.asyncio
async def test_host_is_demoted_when_rejoining_a_hosted_room(trio, store, settle):
    host, bob, _ = trio
    code = host.room.room_code
    host_id = host.my_player_id
    await host.close()
    await store.update_player(bob.my_player_id, is_host=True, last_seen=now_ms())

    assert await host.join_room(code, "Alice", "🐱")
    assert host.my_player_id == host_id
    assert not store.players[host_id].is_host


@pytest.mark.asyncio
async def test_explicit_leave_in_lobby_deletes_row_and_blocks_auto_reconnect(trio, store, settle):
    host, bob, _ = trio
    code = host.room.room_code
    bob_id = bob.my_player_id
    await bob.leave_room()
    await settle()

    assert bob_id not in store.players
    assert bob_id not in {player.id for player in host.players}
    assert bob.room is None
    assert not await bob.join_room(code, "Bob", "🐶", auto_reconnect=True)
    assert await bob.join_room(code, "Bob", "🐶")
    assert not bob.tokens.has_explicit_leave(code)


@pytest.mark.asyncio
async def test_leaving_mid_game_keeps_row_and_host_steps_down(trio, store, settle):
    host, bob, _ = trio
    assert await host.start_game()
    await settle()

    await bob.leave_room()
    assert bob.my_player_id is None
    assert len(store.players) == 3

    host_id = host.my_player_id
    await host.leave_room()
    assert host_id in store.players
    assert not store.players[host_id].is_host


@pytest.mark.asyncio
async def test_last_player_leaving_deletes_room(make_session, store):
    host = make_session()
    await host.create_room("Alice", "🐱")
    room_id = host.room_id
    await host.leave_room()
    assert room_id not in store.rooms
    assert room_id not in store.game_states


@pytest.mark.asyncio
async def test_kicked_player_cannot_rejoin(trio, make_session, settle):
    host, bob, _ = trio
    code = host.room.room_code
    fingerprint = bob.fingerprint
    assert await host.kick_player(bob.my_player_id)
    await settle()

    assert isinstance(bob.error, Kicked)
    assert bob.tokens.has_explicit_leave(code)

    by_name = make_session()
    assert not await by_name.join_room(code, " BOB ", "🐶")
    assert isinstance(by_name.error, Kicked)

    by_device = make_session(fingerprint=fingerprint)
    assert not await by_device.join_room(code, "Totally New", "🐶")
    assert isinstance(by_device.error, Kicked)


@pytest.mark.asyncio
async def test_check_room_exists_reports_counts(trio, store):
    host, _, _ = trio
    info = await host.check_room_exists(host.room.room_code.lower())
    assert info["room"].id == host.room_id
    assert info["playerCount"] == 3
    assert info["onlinePlayerCount"] == 3
    assert info["hasOnlineHost"]
    assert info["duplicates"] == 0
    assert await host.check_room_exists("") is None


@pytest.mark.asyncio
async def test_concurrent_joins_share_one_attempt(trio, make_session, store):
    host, _, _ = trio
    dave = make_session()
    first, second = await asyncio.gather(
        dave.join_room(host.room.room_code, "Dave", "🐸"),
        dave.join_room(host.room.room_code, "Dave", "🐸"),
    )
    assert first and second
    assert len([p for p in store.players.values() if p.name.startswith("Dave")]) == 1
