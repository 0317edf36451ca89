import pytest

from app.chat.errors import AccessDenied
from app.chat.service.access_guard import AccessGuard

from conftest import CITIZEN, LAWYER, OUTSIDER, seed_direct_room


async def test_participants_are_members(repo):
    room_key = await seed_direct_room(repo)
    guard = AccessGuard(repo)

    assert await guard.is_member(room_key, CITIZEN.user_id)
    assert await guard.is_member(room_key, LAWYER.user_id)
    assert not await guard.is_member(room_key, OUTSIDER.user_id)


async def test_unknown_room_and_blank_arguments_are_not_membership(repo):
    room_key = await seed_direct_room(repo)
    guard = AccessGuard(repo)

    assert not await guard.is_member("direct_ghost_room", CITIZEN.user_id)
    assert not await guard.is_member("", CITIZEN.user_id)
    assert not await guard.is_member(room_key, "")


async def test_ensure_member_returns_the_room(repo):
    room_key = await seed_direct_room(repo)

    room = await AccessGuard(repo).ensure_member(room_key, LAWYER.user_id)

    assert room.room_key == room_key


async def test_ensure_member_denies_outsiders(repo):
    room_key = await seed_direct_room(repo)
    guard = AccessGuard(repo)

    with pytest.raises(AccessDenied) as exc:
        await guard.ensure_member(room_key, OUTSIDER.user_id)
    assert exc.value.message == "Access denied to chat room"

    with pytest.raises(AccessDenied) as exc:
        await guard.ensure_member("missing", CITIZEN.user_id, "Chat not found or access denied")
    assert exc.value.message == "Chat not found or access denied"


async def test_membership_is_read_from_the_store_each_time(repo):
    room_key = await seed_direct_room(repo)
    guard = AccessGuard(repo)
    assert await guard.is_member(room_key, LAWYER.user_id)

    repo.rooms[room_key].participants = [p for p in repo.rooms[room_key].participants if p.user_id != LAWYER.user_id]

    assert not await guard.is_member(room_key, LAWYER.user_id)
