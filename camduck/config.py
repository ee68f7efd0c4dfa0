#!/usr/bin/env python3
"""
Unified configuration loader for camduck.

Load order (first found wins):
  1) CAMDUCK_CONFIG (env, absolute or relative to CWD)
  2) /etc/camduck/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import math
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

PROBE_KINDS = ("auto", "windows", "v4l2", "command", "none")

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "mic_device": "Microphone (2- HyperX SoloCast)",
        "input_format": "",  # empty: dshow on Windows, pulse elsewhere
        "music_path": "music.mp3",
        "mic_gain": 1.0,
        "music_gain_active": 0.35,
        "music_gain_muted": 0.0,
        "sample_rate": 48000,
        "channels": 2,
    },
    "control": {
        "endpoint": "tcp://127.0.0.1:5555",
        "filter_tag": "volume@mus",
        "parameter": "volume",
        "reply_timeout": 1.0,
        "warmup_seconds": 0.35,
        "retry_unacknowledged": False,
    },
    "camera": {
        "probe": "auto",
        "poll_interval": 0.15,
        "debounce": 0.3,
        "probe_timeout": 5.0,
        "devices_glob": "/dev/video*",
        "command": [],
    },
    "pipeline": {
        "ffmpeg_path": "ffmpeg",
        "ffplay_path": "ffplay",
        "engine_log_level": "warning",
        "stop_timeout": 1.5,
        "exit_on_failure": False,
    },
    "status_server": {
        "enabled": False,
        "listen_host": "127.0.0.1",
        "listen_port": 8765,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_active_config_path: Path | None = None

log = logging.getLogger("camduck.config")


class ConfigError(ValueError):
    """Raised when configuration values cannot be turned into a pipeline config."""


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    log.warning("Ignoring config %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("CAMDUCK_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/camduck/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "MIC_DEVICE" in os.environ:
        value = os.environ["MIC_DEVICE"].strip()
        if value:
            cfg.setdefault("audio", {})["mic_device"] = value
    if "MUSIC_PATH" in os.environ:
        value = os.environ["MUSIC_PATH"].strip()
        if value:
            cfg.setdefault("audio", {})["music_path"] = value
    if "AUDIO_CHANNELS" in os.environ:
        try:
            channels = int(os.environ["AUDIO_CHANNELS"])
        except ValueError:
            pass
        else:
            cfg.setdefault("audio", {})["channels"] = max(1, min(2, channels))

    env_map = {
        "MIC_INPUT_FORMAT": ("audio", "input_format", str),
        "MIC_GAIN": ("audio", "mic_gain", float),
        "MUSIC_GAIN_ACTIVE": ("audio", "music_gain_active", float),
        "SAMPLE_RATE": ("audio", "sample_rate", int),
        "CONTROL_ENDPOINT": ("control", "endpoint", str),
        "CONTROL_RETRY_UNACKNOWLEDGED": ("control", "retry_unacknowledged", _parse_bool),
        "CAMERA_PROBE": ("camera", "probe", lambda s: s.strip().lower()),
        "CAMERA_POLL_INTERVAL": ("camera", "poll_interval", float),
        "CAMERA_DEBOUNCE": ("camera", "debounce", float),
        "STATUS_ENABLED": ("status_server", "enabled", _parse_bool),
        "STATUS_PORT": ("status_server", "listen_port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (camduck/ -> project root)
    project_root = Path(__file__).resolve().parent.parent
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            continue

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def _section(cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = cfg.get(name)
    if isinstance(value, Mapping):
        return value
    return _DEFAULTS[name]


def _number(section: Mapping[str, Any], key: str, default: Any, *, name: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
    if not math.isfinite(value):
        raise ConfigError(f"{name} must be finite, got {raw!r}")
    return value


def _gain(section: Mapping[str, Any], key: str, default: float, *, name: str) -> float:
    value = _number(section, key, default, name=name)
    if not 0.0 <= value <= 2.0:
        raise ConfigError(f"{name} must be within 0..2, got {value}")
    return value


def _positive(section: Mapping[str, Any], key: str, default: float, *, name: str) -> float:
    value = _number(section, key, default, name=name)
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _string_list(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, str):
        return tuple(raw.split()) if raw.strip() else ()
    if isinstance(raw, (list, tuple)):
        return tuple(str(item) for item in raw if str(item))
    return ()


def default_input_format() -> str:
    return "dshow" if sys.platform.startswith("win") else "pulse"


@dataclass(frozen=True)
class PipelineConfiguration:
    """Static parameters shared by the supervisor and the control loop."""

    mic_device: str
    input_format: str
    music_path: str
    mic_gain: float
    music_gain_active: float
    music_gain_muted: float
    sample_rate: int
    channels: int
    control_endpoint: str
    filter_tag: str
    control_parameter: str
    reply_timeout: float
    warmup_seconds: float
    retry_unacknowledged: bool
    probe_kind: str
    poll_interval: float
    debounce: float
    probe_timeout: float
    devices_glob: str
    probe_command: tuple[str, ...]
    ffmpeg_path: str
    ffplay_path: str
    engine_log_level: str
    stop_timeout: float
    exit_on_failure: bool

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "PipelineConfiguration":
        audio = _section(cfg, "audio")
        control = _section(cfg, "control")
        camera = _section(cfg, "camera")
        pipeline = _section(cfg, "pipeline")

        sample_rate = int(_positive(audio, "sample_rate", 48000, name="audio.sample_rate"))
        channels = int(_number(audio, "channels", 2, name="audio.channels"))
        if channels not in (1, 2):
            raise ConfigError(f"audio.channels must be 1 or 2, got {channels}")

        probe_kind = str(camera.get("probe", "auto") or "auto").strip().lower()
        if probe_kind not in PROBE_KINDS:
            raise ConfigError(
                f"camera.probe must be one of {', '.join(PROBE_KINDS)}, got {probe_kind!r}"
            )
        probe_command = _string_list(camera.get("command"))
        if probe_kind == "command" and not probe_command:
            raise ConfigError("camera.command is required when camera.probe is 'command'")

        endpoint = str(control.get("endpoint", "") or "").strip()
        if "://" not in endpoint:
            raise ConfigError(f"control.endpoint must look like tcp://host:port, got {endpoint!r}")

        filter_tag = str(control.get("filter_tag") or "volume@mus").strip()
        kind, _, instance = filter_tag.partition("@")
        if kind != "volume" or not instance:
            raise ConfigError(
                "control.filter_tag must name a volume filter instance (volume@<name>), "
                f"got {filter_tag!r}"
            )

        warmup = _number(control, "warmup_seconds", 0.35, name="control.warmup_seconds")
        if warmup < 0:
            raise ConfigError(f"control.warmup_seconds must not be negative, got {warmup}")

        input_format = str(audio.get("input_format") or "").strip() or default_input_format()

        return cls(
            mic_device=str(audio.get("mic_device", "")),
            input_format=input_format,
            music_path=str(audio.get("music_path", "")),
            mic_gain=_gain(audio, "mic_gain", 1.0, name="audio.mic_gain"),
            music_gain_active=_gain(
                audio, "music_gain_active", 0.35, name="audio.music_gain_active"
            ),
            music_gain_muted=_gain(audio, "music_gain_muted", 0.0, name="audio.music_gain_muted"),
            sample_rate=sample_rate,
            channels=channels,
            control_endpoint=endpoint,
            filter_tag=filter_tag,
            control_parameter=str(control.get("parameter") or "volume"),
            reply_timeout=_positive(control, "reply_timeout", 1.0, name="control.reply_timeout"),
            warmup_seconds=warmup,
            retry_unacknowledged=bool(control.get("retry_unacknowledged", False)),
            probe_kind=probe_kind,
            poll_interval=_positive(camera, "poll_interval", 0.15, name="camera.poll_interval"),
            debounce=_positive(camera, "debounce", 0.3, name="camera.debounce"),
            probe_timeout=_positive(camera, "probe_timeout", 5.0, name="camera.probe_timeout"),
            devices_glob=str(camera.get("devices_glob") or "/dev/video*"),
            probe_command=probe_command,
            ffmpeg_path=str(pipeline.get("ffmpeg_path") or "ffmpeg"),
            ffplay_path=str(pipeline.get("ffplay_path") or "ffplay"),
            engine_log_level=str(pipeline.get("engine_log_level") or "warning"),
            stop_timeout=_positive(pipeline, "stop_timeout", 1.5, name="pipeline.stop_timeout"),
            exit_on_failure=bool(pipeline.get("exit_on_failure", False)),
        )


def dump_cfg(cfg: Mapping[str, Any]) -> str:
    return yaml.safe_dump(dict(cfg), sort_keys=False, default_flow_style=False)
