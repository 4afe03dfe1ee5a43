"""
Voice Relay Configuration - Centralized configuration management.

Provides:
- Type-safe configuration dataclasses for each pipeline stage
- Loading from environment variables (``.env`` is loaded by the CLI)
- Loading/saving from JSON files
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    if not value:
        return None
    return int(value)


@dataclass
class DiscordConfig:
    """Voice source connection parameters."""

    token: Optional[str] = None
    guild_id: Optional[int] = None
    channel_id: Optional[int] = None

    @classmethod
    def from_env(cls) -> "DiscordConfig":
        return cls(
            token=os.environ.get("DISCORD_TOKEN"),
            guild_id=_env_int("GUILD_ID"),
            channel_id=_env_int("VOICE_CHANNEL_ID"),
        )


@dataclass
class PipelineConfig:
    """Audio format, mixer and watchdog timings."""

    # PCM format shared by decoders, mixer and encoder input
    sample_rate: int = 48000
    channels: int = 1
    frame_samples: int = 960  # 20 ms at 48 kHz

    # Speaker sessions
    speaker_inactivity_timeout: float = 3.0
    placeholder_name: str = "Unknown speaker"

    # Mixer
    mixer_tick_interval: float = 0.25
    mixer_max_inputs: int = 20
    mixer_input_buffer_seconds: float = 1.0

    # Watchdogs and restart
    encoder_idle_timeout: float = 5.0
    global_silence_timeout: float = 5.0
    restart_settle_delay: float = 1.0
    restart_cooldown: float = 2.0

    @property
    def bytes_per_sample(self) -> int:
        return 2 * self.channels

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        config = cls()
        max_inputs = _env_int("MIXER_MAX_INPUTS")
        if max_inputs is not None:
            config.mixer_max_inputs = max_inputs
        return config


@dataclass
class EncoderConfig:
    """External transcoder invocation."""

    ffmpeg_path: str = "ffmpeg"
    bitrate: str = "128k"
    codec: str = "libmp3lame"
    output_format: str = "mp3"
    output_channels: int = 2
    noise_filter: str = "afftdn"
    read_size: int = 4096
    kill_timeout: float = 2.0

    def build_args(self, sample_rate: int, channels: int) -> List[str]:
        """Full argv: raw s16le PCM on stdin, compressed stereo frames on stdout."""
        args = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "s16le",
            "-ar",
            str(sample_rate),
            "-ac",
            str(channels),
            "-i",
            "pipe:0",
        ]
        if self.noise_filter:
            args += ["-af", self.noise_filter]
        args += [
            "-ac",
            str(self.output_channels),
            "-c:a",
            self.codec,
            "-b:a",
            self.bitrate,
            "-f",
            self.output_format,
            "pipe:1",
        ]
        return args

    @classmethod
    def from_env(cls) -> "EncoderConfig":
        return cls(
            ffmpeg_path=os.environ.get("FFMPEG_PATH", "ffmpeg"),
            bitrate=os.environ.get("ENCODER_BITRATE", "128k"),
        )


@dataclass
class ServerConfig:
    """Listener port, static assets and fan-out tuning."""

    host: str = "0.0.0.0"
    port: int = 3000
    static_dir: str = "public"

    # Per-listener send timeout; a listener slower than this is dropped
    send_timeout: float = 0.5

    # Keepalive probes
    keepalive_interval: float = 30.0
    keepalive_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3000")),
            static_dir=os.environ.get("STATIC_DIR", "public"),
        )


@dataclass
class RelayConfig:
    """Complete relay configuration."""

    discord: DiscordConfig = field(default_factory=DiscordConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Load configuration from environment variables."""
        return cls(
            discord=DiscordConfig.from_env(),
            pipeline=PipelineConfig.from_env(),
            encoder=EncoderConfig.from_env(),
            server=ServerConfig.from_env(),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization. The token is never written out."""
        data = asdict(self)
        data["discord"].pop("token", None)
        return data

    @classmethod
    def from_dict(cls, data: dict, base: Optional["RelayConfig"] = None) -> "RelayConfig":
        """Overlay known keys from ``data`` onto ``base`` (or defaults)."""
        config = base or cls()
        for section in ("discord", "pipeline", "encoder", "server"):
            values = data.get(section)
            if not isinstance(values, dict):
                continue
            target = getattr(config, section)
            for key, value in values.items():
                if key in target.__dataclass_fields__:
                    setattr(target, key, value)
        return config

    def save(self, path: Path) -> None:
        """Save configuration to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path, base: Optional["RelayConfig"] = None) -> "RelayConfig":
        """Load configuration from JSON file, falling back to ``base``."""
        if not path.exists():
            return base or cls()
        with open(path) as f:
            data = json.load(f)
        return cls.from_dict(data, base=base)
