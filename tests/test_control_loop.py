from __future__ import annotations

import asyncio
import logging

import pytest

from camduck.control_loop import ActivityControlLoop

ACTIVE = 0.35
MUTED = 0.0


class FakeChannel:
    def __init__(self, results=None, hang: bool = False):
        self.sent: list[tuple[str, str, float]] = []
        self.times: list[float] = []
        self.results = list(results or [])
        self.hang = hang

    async def set_parameter(self, tag, parameter, value):
        self.sent.append((tag, parameter, value))
        self.times.append(asyncio.get_running_loop().time())
        if self.hang:
            await asyncio.sleep(3600)
        return self.results.pop(0) if self.results else True

    @property
    def values(self) -> list[float]:
        return [value for _, _, value in self.sent]


class ScriptedProber:
    """Returns the scripted readings in order, then keeps repeating the last."""

    def __init__(self, readings):
        self.readings = list(readings)
        self.times: list[float] = []

    async def probe(self) -> bool:
        idx = min(len(self.times), len(self.readings) - 1)
        self.times.append(asyncio.get_running_loop().time())
        return self.readings[idx]


def _loop(prober=None, channel=None, **kwargs) -> ActivityControlLoop:
    kwargs.setdefault("poll_interval", 0.05)
    kwargs.setdefault("debounce", 0.1)
    kwargs.setdefault("reply_timeout", 0.5)
    return ActivityControlLoop(
        prober or ScriptedProber([False]),
        channel or FakeChannel(),
        filter_tag="volume@mus",
        parameter="volume",
        active_gain=ACTIVE,
        muted_gain=MUTED,
        **kwargs,
    )


async def _run_for(loop: ActivityControlLoop, seconds: float) -> None:
    task = asyncio.create_task(loop.run())
    await asyncio.sleep(seconds)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


@pytest.mark.asyncio
async def test_first_active_reading_unmutes_once():
    channel = FakeChannel()
    loop = _loop(channel=channel)

    await loop.observe(True)
    await loop.observe(True)
    await loop.observe(True)

    assert channel.sent == [("volume@mus", "volume", ACTIVE)]
    assert loop.state.applied is True


@pytest.mark.asyncio
async def test_idle_reading_while_inactive_sends_nothing():
    channel = FakeChannel()
    loop = _loop(channel=channel)

    await loop.observe(False)
    await loop.observe(False)

    assert channel.sent == []
    assert loop.state.pending_off is None


@pytest.mark.asyncio
async def test_single_idle_reading_does_not_mute_immediately():
    channel = FakeChannel()
    loop = _loop(channel=channel, debounce=0.1)

    await loop.observe(True)
    await loop.observe(False)

    assert channel.values == [ACTIVE]
    assert loop.state.pending_off is not None

    await asyncio.sleep(0.2)

    assert channel.values == [ACTIVE, MUTED]
    assert loop.state.applied is False
    assert loop.state.pending_off is None


@pytest.mark.asyncio
async def test_repeated_idle_readings_keep_the_first_timer():
    loop = _loop(debounce=0.5)

    await loop.observe(True)
    await loop.observe(False)
    first = loop.state.pending_off
    await loop.observe(False)

    assert loop.state.pending_off is first
    loop.state.cancel_pending_off()


@pytest.mark.asyncio
async def test_activity_within_window_cancels_mute():
    channel = FakeChannel()
    loop = _loop(channel=channel, debounce=0.1)

    await loop.observe(True)
    await loop.observe(False)
    await loop.observe(True)

    assert loop.state.pending_off is None
    await asyncio.sleep(0.2)
    assert channel.values == [ACTIVE]


@pytest.mark.asyncio
async def test_run_presets_mute_before_first_poll():
    channel = FakeChannel()
    prober = ScriptedProber([False])
    loop = _loop(prober, channel)

    await _run_for(loop, 0.12)

    assert channel.values == [MUTED]
    assert channel.times[0] <= prober.times[0]
    assert loop.polls >= 2


@pytest.mark.asyncio
async def test_camera_turning_on_unmutes_at_first_active_reading():
    channel = FakeChannel()
    prober = ScriptedProber([False, False, True, True, True])
    loop = _loop(prober, channel, poll_interval=0.05, debounce=0.1)

    await _run_for(loop, 0.4)

    # first value is the startup mute
    assert channel.values[1:] == [ACTIVE]
    assert len(prober.times) >= 5
    third_poll = prober.times[2]
    assert third_poll <= channel.times[1] < prober.times[3]


@pytest.mark.asyncio
async def test_camera_turning_off_mutes_once_after_debounce():
    channel = FakeChannel()
    prober = ScriptedProber([True, True, False, False, False, False])
    loop = _loop(prober, channel, poll_interval=0.05, debounce=0.1)

    await _run_for(loop, 0.5)

    assert channel.values[1:] == [ACTIVE, MUTED]
    first_idle_poll = prober.times[2]
    # event loop timers may fire up to one clock tick early
    assert channel.times[2] - first_idle_poll >= 0.1 - 0.01
    assert loop.state.applied is False


@pytest.mark.asyncio
async def test_brief_dropout_never_mutes():
    channel = FakeChannel()
    prober = ScriptedProber([True, False, True])
    loop = _loop(prober, channel, poll_interval=0.05, debounce=0.3)

    await _run_for(loop, 0.6)

    assert channel.values[1:] == [ACTIVE]
    assert loop.state.applied is True


@pytest.mark.asyncio
async def test_unacknowledged_command_is_not_retried_by_default():
    channel = FakeChannel(results=[False])
    loop = _loop(channel=channel)

    await loop.observe(True)
    await loop.observe(True)

    assert channel.values == [ACTIVE]
    assert loop.state.applied is True


@pytest.mark.asyncio
async def test_unacknowledged_command_retried_when_enabled():
    channel = FakeChannel(results=[False, True])
    loop = _loop(channel=channel, retry_unacknowledged=True)

    await loop.observe(True)
    assert loop.state.applied is False
    await loop.observe(True)

    assert channel.values == [ACTIVE, ACTIVE]
    assert loop.state.applied is True


@pytest.mark.asyncio
async def test_failed_startup_mute_does_not_block_first_unmute():
    channel = FakeChannel(results=[False])
    prober = ScriptedProber([True])
    loop = _loop(prober, channel, retry_unacknowledged=True)

    await _run_for(loop, 0.3)

    assert channel.values == [MUTED, ACTIVE]
    assert loop.state.applied is True


@pytest.mark.asyncio
async def test_failed_mute_is_retried_on_next_idle_reading():
    channel = FakeChannel(results=[True, False, True])
    loop = _loop(channel=channel, debounce=0.05, retry_unacknowledged=True)

    await loop.observe(True)
    await loop.observe(False)
    await asyncio.sleep(0.15)
    assert channel.values == [ACTIVE, MUTED]
    assert loop.state.applied is True

    await loop.observe(False)
    await asyncio.sleep(0.15)
    assert channel.values == [ACTIVE, MUTED, MUTED]
    assert loop.state.applied is False


@pytest.mark.asyncio
async def test_shutdown_cancels_timer_and_sends_final_mute():
    channel = FakeChannel()
    loop = _loop(channel=channel, debounce=5.0)

    await loop.observe(True)
    await loop.observe(False)
    assert await loop.shutdown() is True

    assert loop.state.pending_off is None
    assert channel.values == [ACTIVE, MUTED]
    assert loop.snapshot()["commands_issued"] == 2


@pytest.mark.asyncio
async def test_shutdown_gives_up_on_silent_channel(caplog):
    caplog.set_level(logging.WARNING, logger="camduck.control_loop")
    loop = _loop(channel=FakeChannel(hang=True), reply_timeout=0.05)

    assert await loop.shutdown() is False
    assert "final mute not confirmed" in caplog.text


def test_from_config_maps_fields():
    import copy

    from camduck import config as config_module
    from camduck.config import PipelineConfiguration

    config = PipelineConfiguration.from_cfg(copy.deepcopy(config_module._DEFAULTS))
    loop = ActivityControlLoop.from_config(config, ScriptedProber([False]), FakeChannel())

    assert loop.filter_tag == "volume@mus"
    assert loop.parameter == "volume"
    assert loop.active_gain == 0.35
    assert loop.debounce == 0.3
    assert loop.poll_interval == 0.15
    assert loop.snapshot() == {
        "current": False,
        "applied": False,
        "pending_off": False,
        "polls": 0,
        "commands_issued": 0,
    }
