"""Camera-driven music ducking.

Polls an activity prober and turns its readings into volume commands:

- inactive -> active: applied immediately, cancelling any pending mute
- active -> inactive: a mute timer is armed on the first ``False`` reading and
  only commits if no ``True`` reading arrives within the debounce window
- repeated readings of the same state issue nothing
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from camduck.activity_probe import ActivityProber


class CommandChannel(Protocol):
    async def set_parameter(self, tag: str, parameter: str, value: float) -> bool:
        ...


@dataclass
class ActivityState:
    current: bool = False
    applied: bool = False
    pending_off: Optional[asyncio.TimerHandle] = None

    def cancel_pending_off(self) -> bool:
        """Cancel the armed mute timer. Returns True if one was pending."""
        handle = self.pending_off
        self.pending_off = None
        if handle is None:
            return False
        handle.cancel()
        return True

    def snapshot(self) -> dict:
        return {
            "current": self.current,
            "applied": self.applied,
            "pending_off": self.pending_off is not None,
        }


class ActivityControlLoop:
    def __init__(
        self,
        prober: ActivityProber,
        channel: CommandChannel,
        *,
        filter_tag: str,
        parameter: str,
        active_gain: float,
        muted_gain: float = 0.0,
        poll_interval: float = 0.15,
        debounce: float = 0.3,
        reply_timeout: float = 1.0,
        retry_unacknowledged: bool = False,
    ):
        self.prober = prober
        self.channel = channel
        self.filter_tag = filter_tag
        self.parameter = parameter
        self.active_gain = float(active_gain)
        self.muted_gain = float(muted_gain)
        self.poll_interval = float(poll_interval)
        self.debounce = float(debounce)
        self.reply_timeout = float(reply_timeout)
        self.retry_unacknowledged = bool(retry_unacknowledged)
        self.state = ActivityState()
        self.polls = 0

        self._log = logging.getLogger("camduck.control_loop")
        self._issued = 0
        self._tasks: set[asyncio.Task[bool]] = set()

    @classmethod
    def from_config(cls, config, prober: ActivityProber, channel: CommandChannel):
        return cls(
            prober,
            channel,
            filter_tag=config.filter_tag,
            parameter=config.control_parameter,
            active_gain=config.music_gain_active,
            muted_gain=config.music_gain_muted,
            poll_interval=config.poll_interval,
            debounce=config.debounce,
            reply_timeout=config.reply_timeout,
            retry_unacknowledged=config.retry_unacknowledged,
        )

    # --- Command issuance ---
    async def _send(self, active: bool, seq: int, previous: bool) -> bool:
        gain = self.active_gain if active else self.muted_gain
        ok = await self.channel.set_parameter(self.filter_tag, self.parameter, gain)
        if not ok and self.retry_unacknowledged and seq == self._issued:
            # Nothing newer was issued; let the next poll try again.
            self.state.applied = previous
            self._log.info("command for %s not acknowledged; will retry",
                           "active" if active else "idle")
        return ok

    def _issue(self, active: bool) -> "asyncio.Task[bool]":
        """Record ``active`` as applied and send it.

        The channel serializes requests, so commands reach the engine in the
        order they were issued here.
        """
        previous = self.state.applied
        self.state.applied = active
        self._issued += 1
        task = asyncio.create_task(self._send(active, self._issued, previous))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # --- Debounce ---
    def _arm_pending_off(self) -> None:
        loop = asyncio.get_running_loop()
        self.state.pending_off = loop.call_later(self.debounce, self._on_debounce_elapsed)

    def _on_debounce_elapsed(self) -> None:
        self.state.pending_off = None
        if self.state.current or not self.state.applied:
            return
        self._log.info("camera idle -> music off")
        self._issue(False)

    # --- Transitions ---
    async def observe(self, reading: bool) -> None:
        """Apply one probe reading."""
        reading = bool(reading)
        self.state.current = reading
        if reading:
            self.state.cancel_pending_off()
            if not self.state.applied:
                self._log.info("camera in use -> music on")
                await self._issue(True)
        elif self.state.applied and self.state.pending_off is None:
            self._log.debug("camera reading idle; muting in %.2fs unless it returns", self.debounce)
            self._arm_pending_off()

    async def run(self) -> None:
        """Pre-set mute, then poll until cancelled."""
        await self._issue(False)
        while True:
            reading = await self.prober.probe()
            self.polls += 1
            await self.observe(reading)
            await asyncio.sleep(self.poll_interval)

    async def shutdown(self) -> bool:
        """Cancel pending work and send a final best-effort mute."""
        self.state.cancel_pending_off()
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=self.reply_timeout)
        self.state.current = False
        task = self._issue(False)
        try:
            return await asyncio.wait_for(task, timeout=self.reply_timeout * 2)
        except asyncio.TimeoutError:
            self._log.warning("final mute not confirmed")
            return False

    def snapshot(self) -> dict:
        data = self.state.snapshot()
        data["polls"] = self.polls
        data["commands_issued"] = self._issued
        return data
