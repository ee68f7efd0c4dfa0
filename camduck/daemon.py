#!/usr/bin/env python3
"""
camduck daemon: always-on mic + music mix with camera-driven ducking.

- Starts the ffmpeg -> ffplay pipeline (music muted)
- Waits briefly for the azmq control endpoint, then connects to it
- Polls the camera; music comes up while it is in use
- SIGINT/SIGTERM: mute, stop the pipeline, exit 0
- Unrecoverable errors: best-effort mute and cleanup, exit 1
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional

from camduck import config as config_module
from camduck.activity_probe import ActivityProber, build_prober
from camduck.audio_devices import discover_capture_devices
from camduck.config import ConfigError, PipelineConfiguration
from camduck.control_channel import ControlChannelClient
from camduck.control_loop import ActivityControlLoop
from camduck.pipeline import PipelineStartError, PipelineSupervisor
from camduck.status_server import StatusServer

EXIT_OK = 0
EXIT_FAILURE = 1

log = logging.getLogger("camduck.daemon")


def configure_logging(cfg: Dict[str, Any], level_override: Optional[str] = None) -> None:
    logging_cfg = cfg.get("logging", {}) if isinstance(cfg.get("logging"), dict) else {}
    level_name = str(level_override or logging_cfg.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    if logging_cfg.get("dev_mode"):
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class Daemon:
    def __init__(
        self,
        config: PipelineConfiguration,
        *,
        supervisor: Optional[PipelineSupervisor] = None,
        channel: Optional[ControlChannelClient] = None,
        prober: Optional[ActivityProber] = None,
        status_server_cfg: Optional[Dict[str, Any]] = None,
    ):
        self.config = config
        self.supervisor = supervisor or PipelineSupervisor(config)
        self.channel = channel or ControlChannelClient(reply_timeout=config.reply_timeout)
        self.prober = prober or build_prober(config)
        self.control_loop = ActivityControlLoop.from_config(config, self.prober, self.channel)
        self.stop_event = asyncio.Event()
        self.status_server: Optional[StatusServer] = None
        status_cfg = status_server_cfg or {}
        if status_cfg.get("enabled"):
            self.status_server = StatusServer(
                self.status,
                host=str(status_cfg.get("listen_host", "127.0.0.1")),
                port=int(status_cfg.get("listen_port", 8765)),
            )

    def status(self) -> Dict[str, Any]:
        return {
            "camera": self.control_loop.snapshot(),
            "pipeline": self.supervisor.status(),
            "control": self.channel.status(),
        }

    def request_stop(self, signum: Optional[int] = None) -> None:
        if signum is not None:
            log.info("received signal %s, shutting down...", signum)
        self.stop_event.set()

    def _install_signal_handlers(self) -> list[int]:
        loop = asyncio.get_running_loop()
        installed: list[int] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop, int(signum))
            except (NotImplementedError, RuntimeError):
                # Windows event loops: Ctrl-C arrives as KeyboardInterrupt.
                continue
            installed.append(int(signum))
        return installed

    async def _start_pipeline(self) -> bool:
        try:
            await self.supervisor.start()
        except PipelineStartError as exc:
            if self.config.exit_on_failure:
                log.error("pipeline failed to start: %s", exc)
                return False
            log.error("pipeline failed to start: %s (continuing without audio)", exc)
        return True

    async def run(self) -> int:
        installed = self._install_signal_handlers()
        loop_task: Optional[asyncio.Task[None]] = None
        watchers: set[asyncio.Task] = set()
        rc = EXIT_OK
        try:
            if not await self._start_pipeline():
                return EXIT_FAILURE

            # Give azmq a moment to bind before the first request.
            await asyncio.sleep(self.config.warmup_seconds)
            try:
                self.channel.connect(self.config.control_endpoint)
            except ConnectionError as exc:
                log.error("control channel unavailable: %s", exc)
                return EXIT_FAILURE

            if self.status_server is not None:
                try:
                    await self.status_server.start()
                except OSError as exc:
                    log.warning("status server disabled: %s", exc)
                    self.status_server = None

            loop_task = asyncio.create_task(self.control_loop.run(), name="control_loop")
            stop_task = asyncio.create_task(self.stop_event.wait(), name="stop_wait")
            pipeline_task: Optional[asyncio.Task[None]] = None
            if self.supervisor.handle is not None and self.supervisor.handle.alive:
                pipeline_task = asyncio.create_task(
                    self.supervisor.wait_closed(), name="pipeline_wait"
                )
            watchers.update(t for t in (stop_task, pipeline_task) if t is not None)
            waiting = {loop_task, *watchers}

            while True:
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if loop_task in done:
                    # run() only returns by raising.
                    loop_task.result()
                    log.error("control loop ended unexpectedly")
                    rc = EXIT_FAILURE
                    break
                if stop_task in done:
                    break
                if pipeline_task is not None and pipeline_task in done:
                    waiting.discard(pipeline_task)
                    pipeline_task = None
                    if self.config.exit_on_failure:
                        log.error("pipeline exited; shutting down")
                        rc = EXIT_FAILURE
                        break
                    log.warning("pipeline exited; camera tracking continues without audio")
        except Exception:
            log.exception("fatal error")
            rc = EXIT_FAILURE
        finally:
            for task in watchers:
                if not task.done():
                    task.cancel()
            if watchers:
                await asyncio.gather(*watchers, return_exceptions=True)
            await self._shutdown(loop_task)
            loop = asyncio.get_running_loop()
            for signum in installed:
                loop.remove_signal_handler(signum)
        return rc

    async def _shutdown(self, loop_task: Optional["asyncio.Task[None]"]) -> None:
        if loop_task is not None and not loop_task.done():
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)
        if self.channel.connected:
            try:
                await self.control_loop.shutdown()
            except Exception as exc:  # noqa: BLE001 - shutdown must continue
                log.warning("final mute failed: %r", exc)
        try:
            await self.supervisor.stop()
        except Exception as exc:  # noqa: BLE001 - shutdown must continue
            log.error("pipeline stop failed: %r", exc)
        self.channel.close()
        if self.status_server is not None:
            await self.status_server.stop()
        log.info("clean shutdown complete")


async def _probe_once(config: PipelineConfiguration) -> bool:
    return await build_prober(config).probe()


def _cmd_devices(config: PipelineConfiguration) -> int:
    devices = discover_capture_devices(config.ffmpeg_path)
    if not devices:
        print("No capture devices found.")
        return EXIT_OK
    for device in devices:
        print(f"{device.input_format}\t{device.identifier}\t{device.label}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="camduck",
        description="Duck background music into a live mic feed while the camera is in use.",
    )
    parser.add_argument("--config", help="Path to config.yaml (sets CAMDUCK_CONFIG).")
    parser.add_argument("--log-level", help="Python logging level (default from config: INFO).")
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=("run", "probe", "devices", "print-config"),
        help="run the daemon (default), probe the camera once, list capture devices, "
        "or print the merged configuration",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.config:
        os.environ["CAMDUCK_CONFIG"] = args.config
    cfg = config_module.reload_cfg()
    configure_logging(cfg, args.log_level)

    if args.command == "print-config":
        print(config_module.dump_cfg(cfg), end="")
        return EXIT_OK

    try:
        config = PipelineConfiguration.from_cfg(cfg)
    except ConfigError as exc:
        log.error("invalid configuration: %s", exc)
        return EXIT_FAILURE

    if args.command == "devices":
        return _cmd_devices(config)
    if args.command == "probe":
        active = asyncio.run(_probe_once(config))
        print("active" if active else "idle")
        return EXIT_OK

    active_path = config_module.active_config_path()
    log.info("starting (config=%s)", active_path if active_path else "defaults")
    log.info(
        "set the default playback device to your virtual cable input and pick the "
        "cable output as the microphone in the call app"
    )

    async def _main() -> int:
        daemon = Daemon(config, status_server_cfg=cfg.get("status_server"))
        return await daemon.run()

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    try:
        sys.stdout.reconfigure(line_buffering=True)
    except AttributeError:
        pass
    raise SystemExit(main())
