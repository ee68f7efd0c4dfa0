#!/usr/bin/env python3
"""
PipelineSupervisor: runs the mixer/encoder and the playback sink as a pair.

- The encoder (ffmpeg) mixes mic + looping music and writes WAV to stdout
- The sink (ffplay) reads stdin and plays to the default output device
- A pump task copies encoder stdout into sink stdin
- If the sink dies outside of stop(), the encoder is terminated too

No automatic restart: a dead pipeline stays down until the process is
restarted.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Optional, Sequence

from camduck.config import PipelineConfiguration
from camduck.ffmpeg_io import encoder_command, sink_command

Process = asyncio.subprocess.Process

_BROKEN_PIPE_ERRORS = (BrokenPipeError, ConnectionResetError)


class PipelineStartError(RuntimeError):
    """Raised when either pipeline process could not be launched."""


@dataclass
class PipelineHandle:
    encoder: Optional[Process] = None
    sink: Optional[Process] = None
    link: Optional["asyncio.Task[None]"] = None
    watcher: Optional["asyncio.Task[None]"] = None
    stopping: bool = False
    stopped: bool = False
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def alive(self) -> bool:
        if self.stopping:
            return False
        procs = (self.encoder, self.sink)
        return all(p is not None and p.returncode is None for p in procs)

    @property
    def encoder_pid(self) -> Optional[int]:
        return self.encoder.pid if self.encoder is not None else None

    @property
    def sink_pid(self) -> Optional[int]:
        return self.sink.pid if self.sink is not None else None

    def status(self) -> dict:
        return {
            "alive": self.alive,
            "stopping": self.stopping,
            "encoder_pid": self.encoder_pid,
            "sink_pid": self.sink_pid,
            "encoder_rc": self.encoder.returncode if self.encoder is not None else None,
            "sink_rc": self.sink.returncode if self.sink is not None else None,
        }


class PipelineSupervisor:
    def __init__(
        self,
        config: PipelineConfiguration,
        *,
        encoder_cmd: Optional[Sequence[str]] = None,
        sink_cmd: Optional[Sequence[str]] = None,
        chunk_size: int = 4096,
    ):
        self.config = config
        self.encoder_cmd = list(encoder_cmd) if encoder_cmd else encoder_command(config)
        self.sink_cmd = list(sink_cmd) if sink_cmd else sink_command(config)
        self.chunk_size = int(chunk_size)
        self.stop_timeout = float(config.stop_timeout)
        self.handle: Optional[PipelineHandle] = None

        self._log = logging.getLogger("camduck.pipeline")

    async def _spawn(self, name: str, cmd: Sequence[str], **kwargs) -> Process:
        self._log.debug("Launching %s: %s", name, " ".join(cmd))
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                start_new_session=True,
                **kwargs,
            )
        except OSError as exc:
            self._log.error("%s failed to start: %s", name, exc)
            raise PipelineStartError(f"{name} failed to start: {exc}") from exc

    async def start(self) -> PipelineHandle:
        """Launch encoder and sink and link them.

        Raises PipelineStartError after tearing down whatever did start.
        """
        handle = PipelineHandle()
        self.handle = handle

        try:
            handle.encoder = await self._spawn(
                "encoder",
                self.encoder_cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
            )
            if handle.stopping:
                await self._terminate(handle.encoder, "encoder")
                raise PipelineStartError("pipeline stopped while starting")
            handle.sink = await self._spawn(
                "sink",
                self.sink_cmd,
                stdin=subprocess.PIPE,
            )
            if handle.stopping:
                await self._terminate(handle.sink, "sink")
                await self._terminate(handle.encoder, "encoder")
                raise PipelineStartError("pipeline stopped while starting")
        except PipelineStartError:
            await self.stop(handle)
            raise

        handle.link = asyncio.create_task(self._pump(handle), name="pipeline_link")
        handle.watcher = asyncio.create_task(self._watch(handle), name="pipeline_watch")
        self._log.info(
            "pipeline running (encoder pid=%s, sink pid=%s); control endpoint %s",
            handle.encoder_pid,
            handle.sink_pid,
            self.config.control_endpoint,
        )
        return handle

    async def _pump(self, handle: PipelineHandle) -> None:
        assert handle.encoder is not None and handle.sink is not None
        src = handle.encoder.stdout
        dst = handle.sink.stdin
        assert src is not None and dst is not None
        try:
            while True:
                chunk = await src.read(self.chunk_size)
                if not chunk:
                    self._log.debug("encoder output ended")
                    break
                dst.write(chunk)
                await dst.drain()
        except _BROKEN_PIPE_ERRORS:
            # Sink went away; the watcher deals with the encoder.
            pass
        except OSError as e:
            self._log.error("pipeline link error: %r", e)
        finally:
            self._close_sink_input(handle)

    def _close_sink_input(self, handle: PipelineHandle) -> None:
        sink = handle.sink
        if sink is None or sink.stdin is None:
            return
        try:
            if not sink.stdin.is_closing():
                sink.stdin.close()
        except _BROKEN_PIPE_ERRORS:
            pass
        except (OSError, RuntimeError) as e:
            self._log.debug("sink stdin close error: %r", e)

    async def _watch(self, handle: PipelineHandle) -> None:
        assert handle.sink is not None
        rc = await handle.sink.wait()
        if handle.stopping:
            return
        self._log.warning("sink exited (rc=%s); stopping encoder", rc)
        await self._terminate(handle.encoder, "encoder")
        if handle.link is not None:
            await asyncio.gather(handle.link, return_exceptions=True)
        handle.closed.set()
        self._log.error("pipeline is down; restart camduck to restore audio")

    async def _terminate(self, proc: Optional[Process], name: str) -> None:
        """SIGTERM with timeout, then SIGKILL. No-op for missing or exited processes."""
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
            self._log.debug("%s terminated with rc=%s", name, rc)
            return
        except asyncio.TimeoutError:
            self._log.warning("%s did not exit after SIGTERM; sending SIGKILL", name)
        try:
            proc.kill()
        except ProcessLookupError:
            return
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
            self._log.info("%s killed; rc=%s", name, rc)
        except asyncio.TimeoutError:
            self._log.error("%s still not reaped after SIGKILL; zombie risk", name)

    async def stop(self, handle: Optional[PipelineHandle] = None) -> None:
        """Tear the pipeline down. Safe to call repeatedly and at any time."""
        handle = handle if handle is not None else self.handle
        if handle is None:
            return
        if handle.stopped:
            await handle.closed.wait()
            return
        handle.stopping = True
        handle.stopped = True

        current = asyncio.current_task()
        for task in (handle.link, handle.watcher):
            if task is not None and task is not current and not task.done():
                task.cancel()
        pending = [
            t for t in (handle.link, handle.watcher) if t is not None and t is not current
        ]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._close_sink_input(handle)
        await self._terminate(handle.sink, "sink")
        await self._terminate(handle.encoder, "encoder")
        handle.closed.set()
        self._log.info("pipeline stopped")

    def is_alive(self) -> bool:
        return self.handle is not None and self.handle.alive

    async def wait_closed(self) -> None:
        handle = self.handle
        if handle is None:
            return
        await handle.closed.wait()

    def status(self) -> dict:
        if self.handle is None:
            return {"alive": False, "stopping": False, "encoder_pid": None, "sink_pid": None}
        return self.handle.status()
