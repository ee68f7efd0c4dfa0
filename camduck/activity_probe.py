"""Camera activity probes.

Every prober exposes ``async probe() -> bool`` and never raises: a missing
tool, a permission problem, a timeout or unexpected output all read as
"inactive".
"""

from __future__ import annotations

import asyncio
import glob
import logging
import subprocess
import sys
from typing import TYPE_CHECKING, Protocol, Sequence

if TYPE_CHECKING:
    from camduck.config import PipelineConfiguration

log = logging.getLogger("camduck.activity_probe")

WEBCAM_CONSENT_SCRIPT = r"""
$paths = @(
  "HKCU:\Software\Microsoft\Windows\CurrentVersion\CapabilityAccessManager\ConsentStore\webcam",
  "HKCU:\Software\Microsoft\Windows\CurrentVersion\CapabilityAccessManager\ConsentStore\webcam\NonPackaged"
)
$active = $false
foreach ($p in $paths) {
  if (Test-Path $p) {
    Get-ChildItem $p -ErrorAction SilentlyContinue | ForEach-Object {
      $k = Get-ItemProperty $_.PSPath -ErrorAction SilentlyContinue
      $start = $k.LastUsedTimeStart
      $stop  = $k.LastUsedTimeStop
      if ($start -and (-not $stop -or [int64]$start -gt [int64]$stop)) { $active = $true }
    }
    $kroot = Get-ItemProperty $p -ErrorAction SilentlyContinue
    if ($kroot) {
      $start = $kroot.LastUsedTimeStart
      $stop  = $kroot.LastUsedTimeStop
      if ($start -and (-not $stop -or [int64]$start -gt [int64]$stop)) { $active = $true }
    }
  }
}
if ($active) { "True" } else { "False" }
""".strip()


class ActivityProber(Protocol):
    async def probe(self) -> bool:
        ...


async def _run_query(command: Sequence[str], timeout: float) -> tuple[int, str] | None:
    """Run ``command`` and return ``(returncode, stdout)``, or None on failure."""

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )
    except FileNotFoundError:
        log.debug("probe command not found: %s", command[0])
        return None
    except OSError as exc:
        log.debug("probe command %s failed to start: %r", command[0], exc)
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("probe command %s timed out after %.1fs", command[0], timeout)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return None
    except OSError as exc:
        log.debug("probe command %s failed: %r", command[0], exc)
        return None

    text = stdout.decode("utf-8", errors="replace") if stdout else ""
    return proc.returncode if proc.returncode is not None else -1, text


class StaticProber:
    """Always reports the same answer."""

    def __init__(self, active: bool = False):
        self.active = bool(active)

    async def probe(self) -> bool:
        return self.active


class CommandProber:
    """Runs an external command; exit code 0 means the camera is active."""

    def __init__(self, command: Sequence[str], *, timeout: float = 5.0):
        if not command:
            raise ValueError("CommandProber needs a command")
        self.command = list(command)
        self.timeout = float(timeout)

    def build_command(self) -> list[str] | None:
        return list(self.command)

    async def probe(self) -> bool:
        command = self.build_command()
        if not command:
            return False
        try:
            result = await _run_query(command, self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - a probe never raises
            log.debug("camera probe error: %r", exc)
            return False
        if result is None:
            return False
        return self.interpret(*result)

    def interpret(self, returncode: int, stdout: str) -> bool:
        return returncode == 0


class WindowsRegistryProber(CommandProber):
    """Reads the webcam consent store usage records through PowerShell."""

    def __init__(self, *, timeout: float = 5.0, executable: str = "powershell"):
        super().__init__(
            [executable, "-NoProfile", "-Command", WEBCAM_CONSENT_SCRIPT],
            timeout=timeout,
        )

    def interpret(self, returncode: int, stdout: str) -> bool:
        return "true" in stdout.strip().lower()


class VideoDeviceProber(CommandProber):
    """Asks ``fuser`` whether any process holds a V4L2 device open."""

    def __init__(self, *, devices_glob: str = "/dev/video*", timeout: float = 5.0):
        super().__init__(["fuser"], timeout=timeout)
        self.devices_glob = devices_glob

    def build_command(self) -> list[str] | None:
        devices = sorted(glob.glob(self.devices_glob))
        if not devices:
            return None
        return [*self.command, *devices]


def build_prober(config: "PipelineConfiguration") -> ActivityProber:
    """Return the prober selected by ``camera.probe``."""

    kind = config.probe_kind
    if kind == "auto":
        if sys.platform.startswith("win"):
            kind = "windows"
        elif sys.platform.startswith("linux"):
            kind = "v4l2"
        else:
            log.warning(
                "no camera probe for platform %s; music stays muted "
                "(set camera.probe to 'command' to supply one)",
                sys.platform,
            )
            return StaticProber(False)

    if kind == "windows":
        return WindowsRegistryProber(timeout=config.probe_timeout)
    if kind == "v4l2":
        return VideoDeviceProber(
            devices_glob=config.devices_glob, timeout=config.probe_timeout
        )
    if kind == "command":
        return CommandProber(config.probe_command, timeout=config.probe_timeout)
    return StaticProber(False)


__all__ = [
    "ActivityProber",
    "CommandProber",
    "StaticProber",
    "VideoDeviceProber",
    "WindowsRegistryProber",
    "build_prober",
]
