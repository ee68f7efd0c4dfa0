"""Request/reply client for ffmpeg's azmq control endpoint.

azmq answers every command with ``"<code> <message>"`` where code 0 means the
filter accepted it. A REQ socket must see the reply before it may send again,
so commands are serialized with a lock and a socket that lost its reply is
thrown away and reopened.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import zmq
import zmq.asyncio

from camduck.ffmpeg_io import volume_command


class ControlChannelClient:
    def __init__(
        self,
        *,
        reply_timeout: float = 1.0,
        context: Optional[zmq.asyncio.Context] = None,
    ):
        self.reply_timeout = float(reply_timeout)
        self.endpoint: Optional[str] = None
        self.commands_sent = 0
        self.commands_failed = 0
        self.last_reply: Optional[str] = None

        self._log = logging.getLogger("camduck.control_channel")
        self._owns_context = context is None
        self._ctx = context
        self._sock: Optional[zmq.asyncio.Socket] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._sock is not None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def connect(self, endpoint: str) -> None:
        """Open the REQ session. Raises ConnectionError if it cannot be opened."""
        self.endpoint = endpoint
        self._close_socket()
        self._sock = self._open_socket(endpoint)
        self._log.info("control channel connected to %s", endpoint)

    def _open_socket(self, endpoint: str) -> zmq.asyncio.Socket:
        if self._ctx is None:
            self._ctx = zmq.asyncio.Context()
        try:
            sock = self._ctx.socket(zmq.REQ)
        except zmq.ZMQError as exc:
            raise ConnectionError(f"unable to create control socket: {exc}") from exc
        sock.setsockopt(zmq.LINGER, 0)
        try:
            sock.connect(endpoint)
        except zmq.ZMQError as exc:
            sock.close(linger=0)
            raise ConnectionError(f"unable to connect to {endpoint}: {exc}") from exc
        return sock

    def _close_socket(self) -> None:
        sock = self._sock
        self._sock = None
        if sock is not None:
            try:
                sock.close(linger=0)
            except zmq.ZMQError as e:
                self._log.debug("control socket close error: %r", e)

    def _reset_socket(self) -> None:
        """Replace a REQ socket stuck waiting for a reply."""
        self._close_socket()
        if self.endpoint is None:
            return
        try:
            self._sock = self._open_socket(self.endpoint)
        except ConnectionError as exc:
            self._log.warning("control channel reconnect failed: %s", exc)

    async def send_command(self, command: str) -> bool:
        """Send one raw azmq command and wait for its reply.

        Returns True only when the engine acknowledged the command with code 0.
        Transport errors and timeouts are logged and reported as False.
        """
        async with self._lock:
            sock = self._sock
            if sock is None:
                self._log.warning("control channel not connected; dropped %r", command)
                self.commands_failed += 1
                return False

            self.commands_sent += 1
            try:
                reply = await asyncio.wait_for(
                    self._roundtrip(sock, command), timeout=self.reply_timeout
                )
            except asyncio.TimeoutError:
                self._log.warning(
                    "no reply to %r within %.2fs; resetting control socket",
                    command,
                    self.reply_timeout,
                )
                self.commands_failed += 1
                self._reset_socket()
                return False
            except zmq.ZMQError as exc:
                self._log.warning("control command %r failed: %s", command, exc)
                self.commands_failed += 1
                self._reset_socket()
                return False
            except asyncio.CancelledError:
                # The reply may never be read now; the REQ socket is unusable.
                self._log.debug("control command %r cancelled; resetting control socket", command)
                self.commands_failed += 1
                self._reset_socket()
                raise

        self.last_reply = reply
        ok = self._reply_ok(reply)
        if ok:
            self._log.debug("control %r -> %r", command, reply)
        else:
            self.commands_failed += 1
            self._log.warning("control command %r rejected: %r", command, reply)
        return ok

    async def _roundtrip(self, sock: zmq.asyncio.Socket, command: str) -> str:
        await sock.send_string(command)
        reply = await sock.recv()
        return reply.decode("utf-8", errors="replace")

    @staticmethod
    def _reply_ok(reply: str) -> bool:
        head = reply.strip().split(None, 1)
        if not head:
            return False
        try:
            return int(head[0]) == 0
        except ValueError:
            return False

    async def set_parameter(self, tag: str, parameter: str, value: float) -> bool:
        return await self.send_command(volume_command(tag, parameter, value))

    def close(self) -> None:
        self._close_socket()
        if self._owns_context and self._ctx is not None:
            self._ctx.term()
            self._ctx = None
        self.endpoint = None

    def status(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "connected": self.connected,
            "commands_sent": self.commands_sent,
            "commands_failed": self.commands_failed,
            "last_reply": self.last_reply,
        }
