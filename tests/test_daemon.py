from __future__ import annotations

import asyncio
import copy
import os
import signal
import sys
from dataclasses import replace
from types import SimpleNamespace

import pytest

from camduck import config as config_module
from camduck import daemon as daemon_module
from camduck.activity_probe import StaticProber
from camduck.config import PipelineConfiguration
from camduck.daemon import EXIT_FAILURE, EXIT_OK, Daemon
from camduck.pipeline import PipelineStartError


class FakeSupervisor:
    def __init__(self, fail_start: bool = False):
        self.fail_start = fail_start
        self.handle = None
        self.started = 0
        self.stopped = 0
        self.closed = asyncio.Event()

    async def start(self):
        self.started += 1
        if self.fail_start:
            raise PipelineStartError("encoder failed to start: no ffmpeg")
        self.handle = SimpleNamespace(alive=True)
        return self.handle

    async def wait_closed(self):
        await self.closed.wait()

    def die(self):
        self.handle.alive = False
        self.closed.set()

    async def stop(self, handle=None):
        self.stopped += 1

    def status(self):
        return {"alive": bool(self.handle and self.handle.alive)}


class FakeChannel:
    def __init__(self, refuse: bool = False):
        self.refuse = refuse
        self.endpoint = None
        self.values: list[float] = []
        self.closed = False

    @property
    def connected(self) -> bool:
        return self.endpoint is not None

    def connect(self, endpoint):
        if self.refuse:
            raise ConnectionError(f"cannot connect to {endpoint}")
        self.endpoint = endpoint

    async def set_parameter(self, tag, parameter, value):
        self.values.append(value)
        return True

    def close(self):
        self.closed = True
        self.endpoint = None

    def status(self):
        return {"endpoint": self.endpoint}


class BrokenProber:
    async def probe(self) -> bool:
        raise RuntimeError("probe backend crashed")


def _config(**overrides) -> PipelineConfiguration:
    base = PipelineConfiguration.from_cfg(copy.deepcopy(config_module._DEFAULTS))
    defaults = dict(warmup_seconds=0.0, poll_interval=0.02, debounce=0.05, reply_timeout=0.2)
    defaults.update(overrides)
    return replace(base, **defaults)


def _daemon(config=None, *, supervisor=None, channel=None, prober=None) -> Daemon:
    return Daemon(
        config or _config(),
        supervisor=supervisor or FakeSupervisor(),
        channel=channel or FakeChannel(),
        prober=prober or StaticProber(True),
    )


@pytest.mark.asyncio
async def test_stop_request_mutes_and_tears_down():
    supervisor = FakeSupervisor()
    channel = FakeChannel()
    daemon = _daemon(supervisor=supervisor, channel=channel)

    asyncio.get_running_loop().call_later(0.15, daemon.request_stop)
    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_OK
    assert channel.values[0] == 0.0
    assert 0.35 in channel.values
    assert channel.values[-1] == 0.0
    assert channel.closed
    assert supervisor.started == 1
    assert supervisor.stopped == 1


@pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX signal delivery")
@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
@pytest.mark.asyncio
async def test_termination_signals_mute_and_exit_cleanly(signum):
    supervisor = FakeSupervisor()
    channel = FakeChannel()
    daemon = _daemon(supervisor=supervisor, channel=channel)

    asyncio.get_running_loop().call_later(0.15, os.kill, os.getpid(), signum)
    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_OK
    assert channel.values[-1] == 0.0
    assert supervisor.stopped == 1
    assert channel.closed


@pytest.mark.asyncio
async def test_status_combines_component_state():
    daemon = _daemon()
    status = daemon.status()
    assert set(status) == {"camera", "pipeline", "control"}
    assert status["pipeline"] == {"alive": False}


@pytest.mark.asyncio
async def test_control_loop_failure_exits_nonzero_after_cleanup(caplog):
    supervisor = FakeSupervisor()
    channel = FakeChannel()
    daemon = _daemon(supervisor=supervisor, channel=channel, prober=BrokenProber())

    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_FAILURE
    assert "fatal error" in caplog.text
    assert supervisor.stopped == 1
    assert channel.values[-1] == 0.0
    assert channel.closed
    leftover = [t for t in asyncio.all_tasks() if t.get_name() in {"stop_wait", "pipeline_wait"}]
    assert leftover == []


@pytest.mark.asyncio
async def test_start_failure_exits_when_configured():
    supervisor = FakeSupervisor(fail_start=True)
    channel = FakeChannel()
    daemon = _daemon(_config(exit_on_failure=True), supervisor=supervisor, channel=channel)

    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_FAILURE
    assert channel.values == []
    assert supervisor.stopped == 1


@pytest.mark.asyncio
async def test_start_failure_degrades_by_default(caplog):
    supervisor = FakeSupervisor(fail_start=True)
    channel = FakeChannel()
    daemon = _daemon(supervisor=supervisor, channel=channel)

    asyncio.get_running_loop().call_later(0.1, daemon.request_stop)
    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_OK
    assert "continuing without audio" in caplog.text
    assert channel.values[0] == 0.0


@pytest.mark.asyncio
async def test_pipeline_death_exits_when_configured():
    supervisor = FakeSupervisor()
    daemon = _daemon(_config(exit_on_failure=True), supervisor=supervisor)

    loop = asyncio.get_running_loop()
    loop.call_later(0.1, supervisor.die)
    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_FAILURE
    assert supervisor.stopped == 1


@pytest.mark.asyncio
async def test_pipeline_death_keeps_running_by_default(caplog):
    supervisor = FakeSupervisor()
    daemon = _daemon(supervisor=supervisor)

    loop = asyncio.get_running_loop()
    loop.call_later(0.05, supervisor.die)
    loop.call_later(0.2, daemon.request_stop)
    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_OK
    assert "camera tracking continues without audio" in caplog.text


@pytest.mark.asyncio
async def test_unreachable_control_endpoint_exits_nonzero():
    supervisor = FakeSupervisor()
    daemon = _daemon(supervisor=supervisor, channel=FakeChannel(refuse=True))

    rc = await asyncio.wait_for(daemon.run(), timeout=5.0)

    assert rc == EXIT_FAILURE
    assert supervisor.stopped == 1


@pytest.fixture
def isolated_config(monkeypatch, tmp_path):
    for key in ("DEV", "MIC_DEVICE", "CAMERA_PROBE", "STATUS_ENABLED", "STATUS_PORT"):
        monkeypatch.delenv(key, raising=False)
    config_path = tmp_path / "config.yaml"
    monkeypatch.setenv("CAMDUCK_CONFIG", str(config_path))
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    return config_path


def test_print_config_shows_merged_values(isolated_config, capsys):
    isolated_config.write_text("audio:\n  music_path: /srv/loop.mp3\n", encoding="utf-8")

    rc = daemon_module.main(["--config", str(isolated_config), "print-config"])

    assert rc == EXIT_OK
    out = capsys.readouterr().out
    assert "music_path: /srv/loop.mp3" in out
    assert "endpoint: tcp://127.0.0.1:5555" in out


def test_invalid_config_exits_nonzero(isolated_config):
    isolated_config.write_text("camera:\n  probe: telepathy\n", encoding="utf-8")
    assert daemon_module.main(["--config", str(isolated_config), "probe"]) == EXIT_FAILURE


def test_probe_command_prints_reading(isolated_config, capsys):
    isolated_config.write_text("camera:\n  probe: none\n", encoding="utf-8")

    rc = daemon_module.main(["--config", str(isolated_config), "probe"])

    assert rc == EXIT_OK
    assert capsys.readouterr().out.strip() == "idle"


def test_devices_command_lists_discovered_devices(isolated_config, capsys, monkeypatch):
    from camduck.audio_devices import CaptureDevice

    monkeypatch.setattr(
        daemon_module,
        "discover_capture_devices",
        lambda ffmpeg_path: [CaptureDevice("alsa_input.usb", "USB Mic", "pulse")],
    )

    rc = daemon_module.main(["devices"])

    assert rc == EXIT_OK
    assert capsys.readouterr().out.strip() == "pulse\talsa_input.usb\tUSB Mic"


def test_parser_defaults_to_run():
    args = daemon_module.build_parser().parse_args([])
    assert args.command == "run"
    assert args.config is None
