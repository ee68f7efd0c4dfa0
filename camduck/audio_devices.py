"""Enumerate microphones the mixer can open, for picking ``audio.mic_device``."""

from __future__ import annotations

import re
import subprocess
import sys
from dataclasses import dataclass
from typing import Iterable, List


_ALSA_LINE = re.compile(
    r"card\s+(?P<card_index>\d+):\s*"
    r"(?P<card_name>[^\[]+)\[(?P<card_id>[^\]]+)\],\s*"
    r"device\s+(?P<device_index>\d+):\s*"
    r"(?P<device_name>[^\[]+)\[(?P<device_id>[^\]]+)\]",
    re.IGNORECASE,
)
_DSHOW_NAMED = re.compile(r'"(?P<name>[^"]+)"\s*\((?P<kind>audio|video|none)\)', re.IGNORECASE)
_DSHOW_QUOTED = re.compile(r'\]\s+"(?P<name>[^"]+)"\s*$')


@dataclass(frozen=True)
class CaptureDevice:
    identifier: str
    label: str
    input_format: str


def _run_listing(command: Iterable[str]) -> str:
    try:
        result = subprocess.run(
            list(command),
            check=False,
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except FileNotFoundError:
        return ""
    except subprocess.SubprocessError:
        return ""

    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    return output


def parse_alsa_listing(output: str) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    for line in output.splitlines():
        match = _ALSA_LINE.search(line)
        if not match:
            continue
        card_id = match.group("card_id").strip()
        device_index = int(match.group("device_index"))
        card_name = match.group("card_name").strip() or card_id
        device_name = match.group("device_name").strip() or match.group("device_id").strip()
        devices.append(
            CaptureDevice(
                identifier=f"hw:CARD={card_id},DEV={device_index}",
                label=f"{card_name} ({card_id}), device {device_index}: {device_name}",
                input_format="alsa",
            )
        )
    return devices


def parse_pulse_sources(output: str) -> List[CaptureDevice]:
    """Parse ``pactl list short sources``; monitor sources are skipped."""
    devices: List[CaptureDevice] = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        name = parts[1].strip()
        if not name or name.endswith(".monitor"):
            continue
        devices.append(CaptureDevice(identifier=name, label=name, input_format="pulse"))
    return devices


def parse_dshow_listing(output: str) -> List[CaptureDevice]:
    """Parse the stderr of ``ffmpeg -list_devices true -f dshow -i dummy``.

    Newer builds tag each device with ``(audio)``/``(video)``; older ones
    group them under "DirectShow audio devices" headers.
    """
    devices: List[CaptureDevice] = []
    section = ""
    for line in output.splitlines():
        lowered = line.lower()
        if "alternative name" in lowered:
            continue
        if "directshow video devices" in lowered:
            section = "video"
            continue
        if "directshow audio devices" in lowered:
            section = "audio"
            continue
        match = _DSHOW_NAMED.search(line)
        if match:
            if match.group("kind").lower() == "audio":
                name = match.group("name")
                devices.append(CaptureDevice(identifier=name, label=name, input_format="dshow"))
            continue
        match = _DSHOW_QUOTED.search(line)
        if match and section == "audio":
            name = match.group("name")
            devices.append(CaptureDevice(identifier=name, label=name, input_format="dshow"))
    return devices


def discover_capture_devices(ffmpeg_path: str = "ffmpeg") -> List[CaptureDevice]:
    """Return microphones for the current platform."""

    if sys.platform.startswith("win"):
        output = _run_listing([ffmpeg_path, "-hide_banner", "-list_devices", "true",
                               "-f", "dshow", "-i", "dummy"])
        return parse_dshow_listing(output)

    discovered: List[CaptureDevice] = []
    discovered.extend(parse_pulse_sources(_run_listing(["pactl", "list", "short", "sources"])))
    seen_ids: set[str] = set()
    for device in parse_alsa_listing(_run_listing(["arecord", "-l"])):
        if device.identifier in seen_ids:
            continue
        seen_ids.add(device.identifier)
        discovered.append(device)
    return discovered


__all__ = [
    "CaptureDevice",
    "discover_capture_devices",
    "parse_alsa_listing",
    "parse_dshow_listing",
    "parse_pulse_sources",
]
