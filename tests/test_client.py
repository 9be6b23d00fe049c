"""Tests for SlackClient: lookups, event dispatch, outbound calls, reconnect policy."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from slack_sdk.errors import SlackApiError

from slackpuppet.errors import DeliveryError, TransportError
from slackpuppet.models import (
    Authenticated,
    Connected,
    Disconnected,
    EntityUpdated,
    MessageDeleted,
    MessageEdited,
    MessageReceived,
    PresenceChanged,
    ReactionChanged,
    RemoteChannel,
)


def _api_error(code):
    return SlackApiError(f"failed: {code}", {"ok": False, "error": code})


# ── Cached lookups ────────────────────────────────────────────

class TestLookups:
    @pytest.mark.asyncio
    async def test_concurrent_lookups_fetch_once(self, client, web, drain):
        async def users_info(user):
            await asyncio.sleep(0.01)
            return {"user": {"id": user, "name": "ann", "profile": {"display_name": "Ann"}}}

        web.users_info = AsyncMock(side_effect=users_info)
        first, second = await asyncio.gather(
            client.get_user_by_id("U1"), client.get_user_by_id("U1"))
        assert web.users_info.await_count == 1
        assert first is second
        assert first.display_name == "Ann"
        assert not client.locks.is_alive("user", "U1")
        updates = [e for e in drain(client.events) if isinstance(e, EntityUpdated)]
        assert len(updates) == 1

    @pytest.mark.asyncio
    async def test_cached_user_not_refetched(self, client, web):
        web.users_info = AsyncMock(return_value={"user": {"id": "U1", "name": "ann"}})
        await client.get_user_by_id("U1")
        await client.get_user_by_id("U1")
        assert web.users_info.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_lookup_returns_none_and_releases(self, client, web):
        web.users_info = AsyncMock(side_effect=_api_error("user_not_found"))
        assert await client.get_user_by_id("U9") is None
        assert not client.locks.is_alive("user", "U9")

    @pytest.mark.asyncio
    async def test_failed_bot_lookup_gives_placeholder(self, client, web):
        web.bots_info = AsyncMock(side_effect=_api_error("bot_not_found"))
        bot = await client.get_bot_by_id("B1")
        assert bot.id == "B1"
        assert bot.name == "unknown"

    @pytest.mark.asyncio
    async def test_channel_lookup_skips_direct(self, client, web):
        client.cache.update_channel(RemoteChannel("D1", is_direct=True, user="U1"))
        client.cache.update_channel(RemoteChannel("C1", name="general"))
        assert await client.get_channel_by_id("D1") is None
        assert (await client.get_room_by_id("D1")).is_direct
        assert (await client.get_channel_by_id("C1")).name == "general"
        web.conversations_info.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_room_for_user(self, client, web):
        web.conversations_open = AsyncMock(return_value={"channel": {"id": "D7"}})
        assert await client.get_room_for_user("U1") == "D7"
        assert client.cache.channels["D7"].is_direct

    @pytest.mark.asyncio
    async def test_list_users_paginates(self, client, web):
        web.users_list = AsyncMock(side_effect=[
            {"members": [{"id": "U1", "name": "ann"}], "response_metadata": {"next_cursor": "abc"}},
            {"members": [{"id": "U2", "name": "bob"}, {"id": "U3", "deleted": True}],
             "response_metadata": {"next_cursor": ""}},
        ])
        users = await client.list_users()
        assert sorted(u.id for u in users) == ["U1", "U2"]
        assert web.users_list.await_args_list[1].kwargs["cursor"] == "abc"


# ── Event dispatch ────────────────────────────────────────────

class TestFeedEvent:
    @pytest.mark.asyncio
    async def test_message_subtypes(self, client, drain):
        await client.feed_event({"type": "message", "channel": "C1", "text": "hi", "ts": "1.0"})
        await client.feed_event({"type": "message", "subtype": "message_changed", "channel": "C1"})
        await client.feed_event({"type": "message", "subtype": "message_deleted", "deleted_ts": "1.0"})
        kinds = [type(e) for e in drain(client.events)]
        assert kinds == [MessageReceived, MessageEdited, MessageDeleted]

    @pytest.mark.asyncio
    async def test_events_api_envelope(self, client, drain):
        await client.feed_event({"type": "event_callback", "event": {"type": "message", "text": "x"}})
        (event,) = drain(client.events)
        assert isinstance(event, MessageReceived)
        assert event.data["text"] == "x"

    @pytest.mark.asyncio
    async def test_channel_joined_adds_once(self, client, drain):
        payload = {"type": "channel_joined", "channel": {"id": "C5", "name": "new"}}
        await client.feed_event(payload)
        await client.feed_event(payload)
        events = drain(client.events)
        assert len(events) == 1
        assert events[0].added
        assert client.cache.channels["C5"].name == "new"

    @pytest.mark.asyncio
    async def test_user_change_updates_cache(self, client, drain):
        await client.feed_event({"type": "user_change", "user": {"id": "U1", "name": "ann"}})
        (event,) = drain(client.events)
        assert isinstance(event, EntityUpdated)
        assert not event.added
        assert client.cache.users["U1"] is event.entity

    @pytest.mark.asyncio
    async def test_reactions_and_presence(self, client, drain):
        await client.feed_event({"type": "reaction_removed", "reaction": "tada"})
        await client.feed_event({"type": "presence_change", "users": ["U1"], "user": "U2", "presence": "away"})
        reaction, presence = drain(client.events)
        assert isinstance(reaction, ReactionChanged) and not reaction.added
        assert isinstance(presence, PresenceChanged)
        assert presence.users == ("U1", "U2")

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, client):
        await client.feed_event({"type": "pref_change"})
        assert client.events.empty()


# ── Outbound ──────────────────────────────────────────────────

class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_message_returns_ts(self, client, web):
        web.chat_postMessage = AsyncMock(return_value={"ok": True, "ts": "12.34"})
        assert await client.send_message("hi", "C1", thread_ts="10.0") == "12.34"
        web.chat_postMessage.assert_awaited_once_with(channel="C1", text="hi", thread_ts="10.0")

    @pytest.mark.asyncio
    async def test_emote_uses_me_message(self, client, web):
        web.chat_meMessage = AsyncMock(return_value={"ts": "1.1"})
        assert await client.send_message("waves", "C1", emote=True) == "1.1"
        web.chat_postMessage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejection_raises_delivery_error(self, client, web):
        web.chat_postMessage = AsyncMock(side_effect=_api_error("channel_not_found"))
        with pytest.raises(DeliveryError) as info:
            await client.send_message("hi", "C404")
        assert info.value.error_code == "channel_not_found"

    @pytest.mark.asyncio
    async def test_reaction_calls(self, client, web):
        await client.send_reaction("C1", "1.0", "thumbsup")
        await client.remove_reaction("C1", "1.0", "thumbsup")
        web.reactions_add.assert_awaited_once_with(channel="C1", timestamp="1.0", name="thumbsup")
        web.reactions_remove.assert_awaited_once_with(channel="C1", timestamp="1.0", name="thumbsup")

    @pytest.mark.asyncio
    async def test_file_upload_marks_title(self, client, web):
        client.download_file = AsyncMock(return_value=b"data")
        web.files_upload_v2 = AsyncMock(return_value={
            "file": {"shares": {"public": {"C1": [{"ts": "5.5"}]}}},
        })
        assert await client.send_file_message("http://m/f", "cat.png", "C1") == "5.5"
        kwargs = web.files_upload_v2.await_args.kwargs
        assert kwargs["title"] == "\ufff0cat.png"
        assert kwargs["file"] == b"data"


# ── Connection lifecycle ──────────────────────────────────────

class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_waits_for_hello(self, client, web, monkeypatch, make_ws, drain):
        web.rtm_connect = AsyncMock(return_value={
            "url": "wss://slack/rtm", "self": {"id": "U0", "name": "me"}, "team": {"id": "T1", "name": "Acme"},
        })
        ws = make_ws([json.dumps({"type": "hello"})])
        monkeypatch.setattr("slackpuppet.client.websockets.connect", AsyncMock(return_value=ws))
        await client.connect()
        assert client.connected
        events = drain(client.events)
        assert isinstance(events[0], Authenticated)
        assert events[0].team["name"] == "Acme"
        assert isinstance(events[1], Connected)

        ws.push(json.dumps({"type": "message", "text": "live", "channel": "C1"}))
        event = await asyncio.wait_for(client.events.get(), timeout=1)
        assert event.data["text"] == "live"

        await client.disconnect()
        assert ws.closed
        assert isinstance(await asyncio.wait_for(client.events.get(), timeout=1), Disconnected)

    @pytest.mark.asyncio
    async def test_refused_auth_is_transport_error(self, client, web):
        web.rtm_connect = AsyncMock(side_effect=_api_error("invalid_auth"))
        with pytest.raises(TransportError):
            await client.connect()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_error_frame_is_transport_error(self, client, web, monkeypatch, make_ws, drain):
        web.rtm_connect = AsyncMock(return_value={"url": "wss://slack/rtm", "self": {}, "team": {}})
        ws = make_ws([json.dumps({"type": "error", "error": {"msg": "nope"}})])
        monkeypatch.setattr("slackpuppet.client.websockets.connect", AsyncMock(return_value=ws))
        with pytest.raises(TransportError):
            await client.connect()
        assert ws.closed
        # a handshake that never completed must not announce the account
        assert not [e for e in drain(client.events) if isinstance(e, Authenticated)]


class TestReconnect:
    @pytest.mark.asyncio
    async def test_unexpected_drop_reconnects_once(self, client, drain):
        client.connect = AsyncMock()
        await client.handle_connection_lost()
        await asyncio.sleep(0.05)
        assert client.connect.await_count == 1
        assert client.reconnect_attempts == 1
        (event,) = drain(client.events)
        assert event == Disconnected(intentional=False)

    @pytest.mark.asyncio
    async def test_no_reconnect_after_disconnect(self, client, drain):
        client.connect = AsyncMock()
        await client.disconnect()
        await client.handle_connection_lost()
        await asyncio.sleep(0.05)
        client.connect.assert_not_awaited()
        assert drain(client.events) == [Disconnected(intentional=True)]

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self, client):
        client.reconnect_delay = 0.05
        client.connect = AsyncMock()
        await client.handle_connection_lost()
        await client.disconnect()
        await asyncio.sleep(0.1)
        client.connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_reconnect_not_retried(self, client):
        client.connect = AsyncMock(side_effect=TransportError("still down"))
        await client.handle_connection_lost()
        await asyncio.sleep(0.1)
        assert client.connect.await_count == 1

    @pytest.mark.asyncio
    async def test_one_pending_reconnect_at_a_time(self, client):
        client.reconnect_delay = 0.05
        client.connect = AsyncMock()
        await client.handle_connection_lost()
        await client.handle_connection_lost()
        await asyncio.sleep(0.1)
        assert client.connect.await_count == 1
