"""Configuration helpers for the print streamer.

Settings are layered, lowest precedence first: built-in defaults, a JSON
settings file, environment variables (``YouTube__Polling__BaseIntervalSeconds``)
and command-line overrides (``--YouTube:Polling:BaseIntervalSeconds=20``).
Keys are matched case-insensitively and underscores are ignored.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import typing
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)

MODES = ("serve", "stream", "read", "testsrc", "poll")
PRIVACY_STATUSES = ("public", "unlisted", "private")
TRANSPORTS = ("rtmp", "rtmps")
CAMERA_MODES = ("serve", "stream", "read")

DEFAULT_SETTINGS_FILE = "appsettings.json"
CONFIG_PATH_ENV = "PRINT_STREAMER_CONFIG"


@dataclass
class StreamConfig:
    source: Optional[str] = None
    start_in_serve: bool = False
    max_frame_bytes: int = 4 * 1024 * 1024


@dataclass
class ServeConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class OAuthConfig:
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    token_directory: str = "tokens"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class PollingConfig:
    enabled: bool = True
    base_interval_seconds: float = 15.0
    min_interval_seconds: float = 10.0
    max_interval_seconds: float = 60.0
    idle_threshold_minutes: float = 5.0
    backoff_multiplier: float = 1.5
    max_jitter_seconds: float = 5.0
    requests_per_minute: int = 100
    cache_duration_seconds: float = 5.0
    max_retries: int = 8


@dataclass
class ReuseConfig:
    enabled: bool = True
    store_file: str = "youtube_reuse_store.json"
    window_hours: float = 24.0
    only_unlisted_or_private: bool = True


@dataclass
class BroadcastConfig:
    title: str = "Print Streamer Live"
    description: str = "Live stream from 3D printer"
    privacy: str = "unlisted"
    category_id: str = "28"
    transport: str = "rtmp"
    context: str = "default"
    ingestion_timeout_seconds: float = 90.0
    test_ingestion_timeout_seconds: float = 45.0
    transition_timeout_seconds: float = 180.0
    transition_attempts: int = 12


@dataclass
class EncoderConfig:
    path: str = "ffmpeg"
    fps: int = 30
    bitrate_kbps: int = 2500
    log_level: str = "error"
    stop_grace_seconds: float = 5.0
    stderr_tail_lines: int = 20
    test_pattern: str = "testsrc=size=1280x720"


@dataclass
class TimelapseConfig:
    directory: str = "timelapse"
    period_seconds: float = 60.0
    fps: int = 30


@dataclass
class ReadConfig:
    save_every: int = 30
    directory: str = "frames"


@dataclass
class AppConfig:
    project_name: str = "Print Streamer"
    mode: str = "serve"
    log_level: str = "INFO"
    stream: StreamConfig = field(default_factory=StreamConfig)
    serve: ServeConfig = field(default_factory=ServeConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    reuse: ReuseConfig = field(default_factory=ReuseConfig)
    broadcast: BroadcastConfig = field(default_factory=BroadcastConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    timelapse: TimelapseConfig = field(default_factory=TimelapseConfig)
    read: ReadConfig = field(default_factory=ReadConfig)


# normalized key prefix -> AppConfig attribute holding that section
SECTIONS: Dict[Tuple[str, ...], str] = {
    ("stream",): "stream",
    ("serve",): "serve",
    ("youtube", "oauth"): "oauth",
    ("youtube", "polling"): "polling",
    ("youtube", "reuse"): "reuse",
    ("youtube", "livebroadcast"): "broadcast",
    ("encoder",): "encoder",
    ("timelapse",): "timelapse",
    ("read",): "read",
}

TOP_LEVEL: Dict[Tuple[str, ...], str] = {
    ("mode",): "mode",
    ("logging", "level"): "log_level",
}

Key = Tuple[str, ...]


def normalize_key(raw: str) -> Key:
    """Split ``Section:Key`` or ``Section__Key`` into a normalized path."""
    parts = raw.replace("__", ":").split(":")
    return tuple(part.replace("_", "").lower() for part in parts if part)


def flatten(data: Mapping[str, Any], prefix: Key = ()) -> Dict[Key, Any]:
    flat: Dict[Key, Any] = {}
    for name, value in data.items():
        key = prefix + normalize_key(name)
        if isinstance(value, Mapping):
            flat.update(flatten(value, key))
        else:
            flat[key] = value
    return flat


def parse_command_line(argv: Iterable[str]) -> Dict[Key, Any]:
    """Parse ``--Key=Value`` and ``--Key Value`` style overrides."""
    args = list(argv)
    settings: Dict[Key, Any] = {}
    index = 0
    while index < len(args):
        arg = args[index]
        if not arg.startswith("--") or len(arg) == 2:
            raise ConfigError(f"Unexpected command-line argument: {arg}")
        name = arg[2:]
        if "=" in name:
            name, value = name.split("=", 1)
        elif index + 1 < len(args) and not args[index + 1].startswith("--"):
            index += 1
            value = args[index]
        else:
            raise ConfigError(f"Missing value for --{name}")
        settings[normalize_key(name)] = value
        index += 1
    return settings


def read_settings_file(path: Path) -> Dict[Key, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Cannot read settings file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")
    return flatten(data)


def environment_settings(environ: Mapping[str, str]) -> Dict[Key, Any]:
    return {normalize_key(name): value for name, value in environ.items() if "__" in name}


def _coerce(key: Key, value: Any, hint: Any) -> Any:
    label = ":".join(key)
    target = hint
    if typing.get_origin(hint) is typing.Union:
        args = [arg for arg in typing.get_args(hint) if arg is not type(None)]
        if value is None or value == "":
            return None
        target = args[0]
    try:
        if target is bool:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
            raise ValueError(value)
        if target is int:
            if isinstance(value, bool):
                raise ValueError(value)
            return int(str(value).strip())
        if target is float:
            if isinstance(value, bool):
                raise ValueError(value)
            return float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid value for {label}: {value!r}") from exc
    return str(value)


def _apply(config: AppConfig, settings: Mapping[Key, Any]) -> None:
    top_hints = typing.get_type_hints(AppConfig)
    for key, value in settings.items():
        if key in TOP_LEVEL:
            attr = TOP_LEVEL[key]
            setattr(config, attr, _coerce(key, value, top_hints[attr]))
            continue
        for prefix, section_name in SECTIONS.items():
            if key[: len(prefix)] != prefix or len(key) != len(prefix) + 1:
                continue
            section = getattr(config, section_name)
            hints = typing.get_type_hints(type(section))
            names = {f.name.replace("_", ""): f.name for f in fields(section)}
            attr = names.get(key[-1])
            if attr is None:
                logger.debug("Ignoring unknown setting %s", ":".join(key))
                break
            setattr(section, attr, _coerce(key, value, hints[attr]))
            break
        else:
            logger.debug("Ignoring unknown setting %s", ":".join(key))


def validate(config: AppConfig) -> None:
    config.mode = config.mode.strip().lower()
    if config.mode not in MODES:
        raise ConfigError(f"Invalid Mode {config.mode!r}; expected one of {', '.join(MODES)}")

    broadcast = config.broadcast
    broadcast.privacy = broadcast.privacy.strip().lower()
    if broadcast.privacy not in PRIVACY_STATUSES:
        raise ConfigError(f"Invalid YouTube:LiveBroadcast:Privacy {broadcast.privacy!r}")
    broadcast.transport = broadcast.transport.strip().lower()
    if broadcast.transport not in TRANSPORTS:
        raise ConfigError(f"Invalid YouTube:LiveBroadcast:Transport {broadcast.transport!r}")
    if broadcast.transition_attempts < 1:
        raise ConfigError("YouTube:LiveBroadcast:TransitionAttempts must be at least 1")

    polling = config.polling
    if not (polling.min_interval_seconds <= polling.base_interval_seconds <= polling.max_interval_seconds):
        raise ConfigError(
            "YouTube:Polling intervals must satisfy MinIntervalSeconds <= BaseIntervalSeconds <= MaxIntervalSeconds"
        )
    if polling.min_interval_seconds < 0:
        raise ConfigError("YouTube:Polling:MinIntervalSeconds must not be negative")
    if polling.requests_per_minute < 1:
        raise ConfigError("YouTube:Polling:RequestsPerMinute must be at least 1")
    if polling.backoff_multiplier < 1:
        raise ConfigError("YouTube:Polling:BackoffMultiplier must be at least 1")
    if polling.max_jitter_seconds < 0 or polling.cache_duration_seconds < 0 or polling.max_retries < 0:
        raise ConfigError("YouTube:Polling jitter, cache duration and retries must not be negative")

    if config.mode in CAMERA_MODES and not (config.stream.source or "").strip():
        raise ConfigError(f"Stream:Source is required in {config.mode} mode")

    oauth = config.oauth
    if bool(oauth.client_id) != bool(oauth.client_secret):
        raise ConfigError("YouTube:OAuth:ClientId and YouTube:OAuth:ClientSecret must be set together")

    if config.encoder.fps < 1 or config.timelapse.fps < 1:
        raise ConfigError("Encoder:Fps and Timelapse:Fps must be positive")
    if config.timelapse.period_seconds <= 0:
        raise ConfigError("Timelapse:PeriodSeconds must be positive")
    if config.read.save_every < 1:
        raise ConfigError("Read:SaveEvery must be at least 1")
    if config.stream.max_frame_bytes < 1024:
        raise ConfigError("Stream:MaxFrameBytes must be at least 1024")


def load_config(argv: Optional[List[str]] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load configuration from the settings file, environment variables and arguments."""
    environ = os.environ if environ is None else environ
    cli = parse_command_line(sys.argv[1:] if argv is None else argv)

    explicit = cli.pop(("config",), None) or environ.get(CONFIG_PATH_ENV)
    path = Path(explicit or DEFAULT_SETTINGS_FILE)

    settings: Dict[Key, Any] = {}
    if path.is_file():
        settings.update(read_settings_file(path))
        logger.debug("Loaded settings from %s", path)
    elif explicit:
        raise ConfigError(f"Settings file {path} does not exist")
    settings.update(environment_settings(environ))
    settings.update(cli)

    config = AppConfig()
    _apply(config, settings)
    validate(config)
    return config
