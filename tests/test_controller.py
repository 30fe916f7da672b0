"""PlaybackController: serialization, auto-skip, switching, access checks."""

from __future__ import annotations

import asyncio

import pytest

from jukebox.lib.errors import (
    BusyError, CommandTimeout, ForbiddenError, InvalidArgumentError, PlaybackError,
    PlayerConnectionError,
)
from jukebox.players.base import STOPPED
from jukebox.queue_store import QueueEntry, QueueStore


def vlc_of(factory):
    return factory.last("vlc")


async def hold_lock(controller):
    """Occupy the command lock until the returned event is set."""
    gate = asyncio.Event()
    task = asyncio.create_task(controller.run_exclusive("hold", gate.wait))
    await asyncio.sleep(0)
    return gate, task


# ---------------------------------------------------------------------------
# Queue commands
# ---------------------------------------------------------------------------


async def test_enqueue_when_idle_starts_playing(controller, factory):
    result = await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))

    assert result["index"] == 0
    assert vlc_of(factory).plays() == ["/music/a.mp3"]
    status = controller.get_status()
    assert status["state"] == "playing"
    assert status["currentEntry"]["trackPath"] == "/music/a.mp3"
    assert status["queueLength"] == 2


async def test_play_now_inserts_after_current(controller, factory, queue):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    await controller.play_now(QueueEntry("/music/now.mp3"))

    assert [e.track_path for e in queue.entries] == [
        "/music/a.mp3", "/music/now.mp3", "/music/b.mp3"]
    assert queue.current_index == 1
    assert vlc_of(factory).plays()[-1] == "/music/now.mp3"


async def test_skip_next_stops_then_plays(controller, factory):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    await controller.skip_next()

    assert vlc_of(factory).names()[-2:] == ["stop", "play"]
    assert controller.get_status()["currentEntry"]["trackPath"] == "/music/b.mp3"


async def test_skip_past_end_stops(controller, factory, queue):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.skip_next()

    assert queue.current_index is None
    assert vlc_of(factory).names()[-1] == "stop"
    status = controller.get_status()
    assert status["state"] == "stopped"
    assert status["currentEntry"] is None


async def test_skip_previous_returns_to_earlier_entry(controller, factory):
    for name in "abc":
        await controller.enqueue(QueueEntry(f"/music/{name}.mp3"))
    await controller.skip_next()
    await controller.skip_next()
    await controller.skip_previous()

    assert vlc_of(factory).plays()[-1] == "/music/b.mp3"


async def test_three_failures_advance_past_entry_once(controller, factory, queue):
    player = vlc_of(factory)
    player.failing = {"/music/bad.mp3"}
    queue.append(QueueEntry("/music/bad.mp3"))
    queue.append(QueueEntry("/music/good.mp3"))

    await controller.play_index(0)

    assert player.plays() == ["/music/bad.mp3"] * 3 + ["/music/good.mp3"]
    assert [e.track_path for e in queue.entries] == ["/music/good.mp3"]
    status = controller.get_status()
    assert status["state"] == "playing"
    assert status["currentEntry"]["trackPath"] == "/music/good.mp3"


async def test_unplayable_run_raises_with_index_advanced(controller, factory, queue):
    player = vlc_of(factory)
    player.failing = {"/music/bad1.mp3", "/music/bad2.mp3"}
    for name in ("bad1", "bad2", "good"):
        queue.append(QueueEntry(f"/music/{name}.mp3"))

    with pytest.raises(PlaybackError):
        await controller.play_index(0)

    assert player.plays() == ["/music/bad1.mp3"] * 3 + ["/music/bad2.mp3"] * 3
    assert queue.current_entry.track_path == "/music/bad2.mp3"
    assert controller.get_status()["state"] == "stopped"


async def test_remove_current_entry_stops_playback(controller, factory, queue):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    result = await controller.remove_from_queue(0)

    assert result["removed"]["trackPath"] == "/music/a.mp3"
    assert vlc_of(factory).names()[-1] == "stop"
    assert queue.current_entry.track_path == "/music/b.mp3"
    assert controller.get_status()["state"] == "stopped"


async def test_clear_queue(controller, factory, queue):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.clear_queue()
    assert len(queue) == 0
    assert controller.get_queue()["entries"] == []


async def test_enqueue_playlist_appends_in_order(controller, factory, tmp_path, settings):
    from jukebox.lib.store import JsonDocument
    from jukebox.playlists import PlaylistManager

    manager = PlaylistManager(JsonDocument(str(tmp_path / "playlists.json")), settings,
                              run_exclusive=controller.run_serialized)
    playlist = await manager.create_playlist("Friday")
    await manager.add_track(playlist.id, "/music/x.mp3")
    await manager.add_track(playlist.id, "/music/y.mp3")

    result = await controller.enqueue_playlist(manager.get_playlist(playlist.id))
    assert result["added"] == 2
    assert vlc_of(factory).plays() == ["/music/x.mp3"]
    assert [e["trackPath"] for e in controller.get_queue()["entries"]] == [
        "/music/x.mp3", "/music/y.mp3"]


# ---------------------------------------------------------------------------
# Transport commands
# ---------------------------------------------------------------------------


async def test_toggle_pause_pauses_and_resumes(controller, factory):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    assert (await controller.toggle_pause())["state"] == "paused"
    assert (await controller.toggle_pause())["state"] == "playing"
    assert vlc_of(factory).names()[-2:] == ["pause", "resume"]


async def test_toggle_pause_on_idle_queue_starts_first_entry(controller, factory, queue):
    queue.append(QueueEntry("/music/a.mp3"))
    await controller.toggle_pause()
    assert vlc_of(factory).plays() == ["/music/a.mp3"]


async def test_volume_commands_coalesce(controller, factory):
    gate, holder = await hold_lock(controller)
    tasks = [asyncio.create_task(controller.set_volume(v)) for v in (0.2, 0.5, 0.8)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*tasks)
    await holder

    volumes = [c[1] for c in vlc_of(factory).calls if c[0] == "set_volume"]
    # one call from startup (stored volume), one coalesced change
    assert volumes[1:] == [0.8]
    assert [r["coalesced"] for r in results] == [False, True, True]
    assert controller.get_status()["volume"] == 0.8


async def test_cancelled_volume_change_does_not_block_later_ones(controller, factory):
    gate, holder = await hold_lock(controller)
    queued = asyncio.create_task(controller.set_volume(0.2))
    await asyncio.sleep(0)
    queued.cancel()
    with pytest.raises(asyncio.CancelledError):
        await queued
    gate.set()
    await holder

    result = await controller.set_volume(0.7)
    assert result == {"volume": 0.7, "coalesced": False}
    assert vlc_of(factory).volume == 0.7


async def test_invalid_repeat_mode_is_classified(controller, queue):
    with pytest.raises(InvalidArgumentError) as excinfo:
        await controller.set_repeat_mode("bogus")
    assert excinfo.value.to_dict()["kind"] == "invalid"
    assert queue.repeat_mode == "off"


async def test_toggle_mute_sends_zero_then_restores(controller, factory):
    await controller.set_volume(0.6)
    await controller.toggle_mute()
    await controller.toggle_mute()
    volumes = [c[1] for c in vlc_of(factory).calls if c[0] == "set_volume"]
    assert volumes[-3:] == [0.6, 0.0, 0.6]


async def test_status_reports_transitioning_without_blocking(controller):
    gate, holder = await hold_lock(controller)
    status = controller.get_status()
    assert status["state"] == "transitioning"
    assert status["transitioning"] is True
    gate.set()
    await holder
    assert controller.get_status()["transitioning"] is False


async def test_serialized_writes_are_not_transitioning(controller):
    gate = asyncio.Event()
    task = asyncio.create_task(controller.run_serialized("save_playlist", gate.wait))
    await asyncio.sleep(0)
    assert controller.get_debug_info()["lockHeld"] is True
    status = controller.get_status()
    assert status["transitioning"] is False
    assert status["state"] == "stopped"
    gate.set()
    await task


async def test_command_timeout_releases_lock(controller):
    controller.command_timeout = 0.05
    with pytest.raises(CommandTimeout):
        await controller.run_exclusive("slow", lambda: asyncio.sleep(1))
    controller.command_timeout = 2.0
    status = await controller.stop()
    assert status["state"] == "stopped"


async def test_commands_run_in_arrival_order(controller):
    order = []

    def step(name):
        async def _do():
            order.append(name)
        return _do

    gate, holder = await hold_lock(controller)
    tasks = [asyncio.create_task(controller.run_exclusive(n, step(n))) for n in "abcd"]
    await asyncio.sleep(0)
    gate.set()
    await asyncio.gather(holder, *tasks)
    assert order == ["a", "b", "c", "d"]


# ---------------------------------------------------------------------------
# Backend switching
# ---------------------------------------------------------------------------


async def test_switch_without_resume_pauses_at_captured_position(controller, factory, settings):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.set_volume(0.3)
    vlc = vlc_of(factory)
    vlc.position = 42.0

    result = await controller.switch_audio_player("mpd")
    mpd = factory.last("mpd")

    assert result["captured"] == {"trackPath": "/music/a.mp3", "positionSeconds": 42.0}
    assert vlc.closed
    assert mpd.plays() == []
    assert ("set_volume", 0.3) in mpd.calls
    assert settings.backend_preference() == "mpd"
    status = controller.get_status()
    assert status["state"] == "paused"
    assert status["backend"] == "mpd"

    await controller.toggle_pause()
    assert mpd.plays() == ["/music/a.mp3"]
    assert mpd.calls[-1] == ("seek", 42.0)
    assert controller.get_status()["state"] == "playing"


async def test_switch_with_resume_continues_on_new_player(controller, factory):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    vlc_of(factory).position = 10.0

    result = await controller.switch_audio_player("mpd", resume=True)
    mpd = factory.last("mpd")

    assert result["resumed"] is True
    assert mpd.plays() == ["/music/a.mp3"]
    assert ("seek", 10.0) in mpd.calls
    assert controller.get_status()["state"] == "playing"


async def test_failed_switch_keeps_queue_position(controller, factory, queue):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    vlc = vlc_of(factory)
    vlc.position = 30.0
    factory.options["mpd"] = {"connect_failures": 5}

    with pytest.raises(PlayerConnectionError):
        await controller.switch_audio_player("mpd")

    status = controller.get_status()
    assert status["state"] == "paused"
    assert status["backend"] == "vlc"

    await controller.poll_once()
    assert vlc.plays() == ["/music/a.mp3"]
    assert queue.current_entry.track_path == "/music/a.mp3"
    assert controller.get_status()["state"] == "paused"

    await controller.toggle_pause()
    assert vlc.plays() == ["/music/a.mp3", "/music/a.mp3"]
    assert vlc.calls[-1] == ("seek", 30.0)
    assert controller.get_status()["state"] == "playing"


async def test_timed_out_switch_keeps_queue_position(controller, factory, queue, switcher):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    factory.options["mpd"] = {"delay": 5.0}
    controller.command_timeout = 0.1

    with pytest.raises(CommandTimeout):
        await controller.switch_audio_player("mpd")
    controller.command_timeout = 2.0

    assert factory.last("mpd").closed
    assert switcher.active_kind == "vlc"
    await controller.poll_once()
    assert vlc_of(factory).plays() == ["/music/a.mp3"]
    assert controller.get_status()["state"] == "paused"


async def test_concurrent_switches_second_is_busy(controller, switcher):
    results = await asyncio.gather(
        controller.switch_audio_player("mpd"),
        controller.switch_audio_player("vlc"),
        return_exceptions=True,
    )
    assert results[0]["backend"] == "mpd"
    assert isinstance(results[1], BusyError)
    assert switcher.active_kind == "mpd"


async def test_switch_refused_while_command_executing(controller, switcher):
    gate, holder = await hold_lock(controller)
    with pytest.raises(BusyError):
        await controller.switch_audio_player("mpd")
    gate.set()
    await holder
    assert switcher.active_kind == "vlc"


async def test_reload_preference_unchanged_touches_nothing(controller, factory):
    vlc = vlc_of(factory)
    before = list(vlc.calls)
    result = await controller.reload_audio_player_preference()
    assert result["switched"] is False
    assert vlc.calls == before
    assert len(factory.created) == 1


async def test_reload_preference_switches_when_changed(controller, factory, settings_doc):
    settings_doc.save({"audioPlayer": "mpd"})
    result = await controller.reload_audio_player_preference()
    assert result["switched"] is True
    assert factory.last("mpd").connected
    assert controller.get_status()["backend"] == "mpd"


# ---------------------------------------------------------------------------
# Access policy
# ---------------------------------------------------------------------------


async def test_party_mode_blocks_queue_additions(controller, settings_doc, queue):
    settings_doc.save({"partyMode": {"enabled": True, "allowAddToQueue": False}})
    with pytest.raises(ForbiddenError):
        await controller.enqueue(QueueEntry("/music/a.mp3"))
    assert len(queue) == 0


async def test_party_mode_blocks_skip(controller, settings_doc, factory):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    settings_doc.save({"partyMode": {"enabled": True, "allowNext": False}})
    with pytest.raises(ForbiddenError):
        await controller.skip_next()
    assert vlc_of(factory).plays() == ["/music/a.mp3"]


# ---------------------------------------------------------------------------
# Status monitor
# ---------------------------------------------------------------------------


async def test_natural_track_end_advances(controller, factory, queue):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    player = vlc_of(factory)

    player.state = STOPPED
    await controller.poll_once()

    assert player.plays() == ["/music/a.mp3", "/music/b.mp3"]
    assert [e.track_path for e in queue.entries] == ["/music/b.mp3"]
    assert queue.current_index == 0


async def test_repeat_one_replays_on_natural_end(controller, factory, queue):
    await controller.set_repeat_mode("one")
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    player = vlc_of(factory)

    player.state = STOPPED
    await controller.poll_once()
    assert player.plays() == ["/music/a.mp3", "/music/a.mp3"]


async def test_manual_stop_does_not_advance(controller, factory, queue):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    await controller.stop()
    await controller.poll_once()
    assert vlc_of(factory).plays() == ["/music/a.mp3"]
    assert queue.current_index == 0


async def test_unreachable_player_reports_degraded(controller, factory):
    vlc_of(factory).connected = False
    await controller.poll_once()
    assert controller.get_status()["degraded"] is True


async def test_queue_survives_restart(controller, queue_doc):
    await controller.enqueue(QueueEntry("/music/a.mp3"))
    await controller.enqueue(QueueEntry("/music/b.mp3"))
    restored = QueueStore(queue_doc)
    restored.load()
    assert [e.track_path for e in restored.entries] == ["/music/a.mp3", "/music/b.mp3"]
    assert restored.current_index == 0
    assert restored.active_backend == "vlc"
