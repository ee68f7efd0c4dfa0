"""Shared helpers for building ffmpeg/ffplay command lines."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from camduck.config import PipelineConfiguration

LOW_LATENCY_INPUT_FLAGS = [
    "-flags", "low_delay",
    "-fflags", "nobuffer",
    "-probesize", "32k",
    "-analyzeduration", "0",
]


def _format_gain(value: float) -> str:
    text = f"{float(value):.4f}".rstrip("0").rstrip(".")
    return text or "0"


def _escape_filter_value(value: str) -> str:
    # ':' separates filter options; it needs one escape for the option parser
    # and another for the filter graph parser.
    return value.replace(":", "\\\\:")


def build_filter_graph(config: "PipelineConfiguration") -> str:
    """Return the ``-filter_complex`` expression for the mixer.

    Input 0 is the microphone, input 1 the looping music. The music volume
    filter is tagged with ``filter_tag`` so azmq commands can reach it, and it
    starts at the muted gain.
    """

    tag = config.filter_tag
    return (
        f"[1:a]{tag}={_format_gain(config.music_gain_muted)}[aMus];"
        f"[0:a]volume={_format_gain(config.mic_gain)}[aMic];"
        "[aMic][aMus]amix=inputs=2:duration=longest:dropout_transition=0,"
        f"aresample={config.sample_rate}:async=1:min_comp=0.001:first_pts=0,"
        f"azmq=bind_address={_escape_filter_value(config.control_endpoint)}"
    )


def mic_input_args(config: "PipelineConfiguration") -> list[str]:
    """Return the input arguments for the live microphone.

    dshow needs the ``audio=`` prefix and benefits from small buffers; pulse
    and alsa take the device name as is.
    """

    fmt = config.input_format
    if fmt == "dshow":
        return [
            "-f", "dshow",
            "-rtbufsize", "32M",
            "-audio_buffer_size", "50",
            "-i", f"audio={config.mic_device}",
        ]
    return ["-f", fmt, "-i", config.mic_device]


def encoder_command(config: "PipelineConfiguration") -> list[str]:
    """Return the mixer/encoder command writing WAV to stdout."""

    return [
        config.ffmpeg_path,
        "-hide_banner",
        "-loglevel", config.engine_log_level,
        *mic_input_args(config),
        "-stream_loop", "-1",
        "-i", config.music_path,
        *LOW_LATENCY_INPUT_FLAGS,
        "-use_wallclock_as_timestamps", "1",
        "-reorder_queue_size", "0",
        "-filter_complex", build_filter_graph(config),
        "-ac", str(config.channels),
        "-ar", str(config.sample_rate),
        "-flush_packets", "1",
        "-f", "wav",
        "pipe:1",
    ]


def sink_command(config: "PipelineConfiguration") -> list[str]:
    """Return the playback command reading the mixed stream from stdin."""

    return [
        config.ffplay_path,
        "-nodisp",
        "-autoexit",
        "-loglevel", config.engine_log_level,
        *LOW_LATENCY_INPUT_FLAGS,
        "-",
    ]


def volume_command(tag: str, parameter: str, value: float) -> str:
    """Return an azmq command line such as ``volume@mus volume 0.35``."""

    return f"{tag} {parameter} {_format_gain(value)}"
