from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError
from .models import Mode
from .utils import ensure_directory, expand_path, load_yaml_file, parse_env_bool

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/rotawall/config.yaml")

VALID_PRESETS = ("ultrafast", "superfast", "veryfast", "faster", "fast", "medium", "slow", "slower", "veryslow")
VALID_FPS = (0, 24, 30, 60, 120, 144, 165, 180, 240)
VALID_TRANSITIONS = (
    "none",
    "simple",
    "fade",
    "left",
    "right",
    "top",
    "bottom",
    "wipe",
    "wave",
    "grow",
    "center",
    "any",
    "outer",
    "random",
)
VALID_FILL_MODES = ("fit", "fill", "center", "stretch")


@dataclass
class PathSettings:
    video_dir: Path = field(default_factory=lambda: expand_path("~/Videos/background"))
    image_dir: Path = field(default_factory=lambda: expand_path("~/Pictures/wallpapers"))
    video_state: Path = field(default_factory=lambda: expand_path("~/.cache/rotawall/video.json"))
    image_state: Path = field(default_factory=lambda: expand_path("~/.cache/rotawall/image.json"))
    mode_state: Path = field(default_factory=lambda: expand_path("~/.cache/rotawall/current_mode"))


@dataclass
class VideoEngineSettings:
    type: str = "mpvpaper"
    interval: int = 600
    options: str = "--loop --no-audio --hwdec=auto"


@dataclass
class ImageEngineSettings:
    type: str = "swww"
    interval: int = 300
    transition: str = "fade"
    transition_duration: float = 2.0
    transition_fps: int = 60
    transition_step: int = 20
    fill: str = "fill"


@dataclass
class WeightSettings:
    """Tuning knobs of the weighted rotation.

    Attributes:
        base: Centre of the initial weight range; reshuffled items land near it
        select_penalty: Weight removed from the selected item and shared by the rest
        tolerance: Margin below the top perturbed weight that still counts as a candidate
        perturbation_ratio: Relative size of the per-selection random nudge
        normalization_threshold: Mean weight above which all weights are rescaled
        normalization_target: Mean weight after rescaling
        shuffle_period: Rounds between reshuffles (0 disables reshuffling)
        shuffle_intensity: Fraction of the pool reset on each reshuffle
    """

    base: float = 100.0
    select_penalty: float = 10.0
    tolerance: float = 5.0
    perturbation_ratio: float = 0.03
    normalization_threshold: float = 500.0
    normalization_target: float = 100.0
    shuffle_period: int = 100
    shuffle_intensity: float = 0.1


@dataclass
class TranscodeSettings:
    enabled: bool = True
    cache_dir: Path = field(default_factory=lambda: expand_path("~/.cache/rotawall/transcoded"))
    max_cache_size_mb: int = 10240
    target_resolution: str = "auto"
    target_fps: int = 30
    preload_count: int = 3
    encoder: str = "auto"
    crf: int = 23
    preset: str = "fast"
    preload_interval: float = 30.0

    @property
    def max_cache_bytes(self) -> int:
        return self.max_cache_size_mb * 1024 * 1024


@dataclass
class WatcherSettings:
    enabled: bool = False
    debounce_seconds: float = 5.0


@dataclass
class AppConfig:
    paths: PathSettings = field(default_factory=PathSettings)
    video_engine: VideoEngineSettings = field(default_factory=VideoEngineSettings)
    image_engine: ImageEngineSettings = field(default_factory=ImageEngineSettings)
    weight: WeightSettings = field(default_factory=WeightSettings)
    transcode: TranscodeSettings = field(default_factory=TranscodeSettings)
    watcher: WatcherSettings = field(default_factory=WatcherSettings)

    def media_dir(self, mode: Mode) -> Path:
        return self.paths.video_dir if mode is Mode.VIDEO else self.paths.image_dir

    def state_path(self, mode: Mode) -> Path:
        return self.paths.video_state if mode is Mode.VIDEO else self.paths.image_state

    def engine_type(self, mode: Mode) -> str:
        return self.video_engine.type if mode is Mode.VIDEO else self.image_engine.type

    def interval(self, mode: Mode) -> int:
        return self.video_engine.interval if mode is Mode.VIDEO else self.image_engine.interval


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be provided as a mapping when specified")
    return value


def _float(
    data: dict[str, Any],
    key: str,
    default: float,
    *,
    field_name: str,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        value = float(data.get(key, default))
    except (TypeError, ValueError) as exc:  # noqa: PERF203
        raise ConfigError(f"'{field_name}' must be a number") from exc
    if minimum is not None and value < minimum:
        raise ConfigError(f"'{field_name}' must be greater than or equal to {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"'{field_name}' must be less than or equal to {maximum}")
    return value


def _int(
    data: dict[str, Any],
    key: str,
    default: int,
    *,
    field_name: str,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = data.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"'{field_name}' must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:  # noqa: PERF203
        raise ConfigError(f"'{field_name}' must be an integer") from exc
    if minimum is not None and value < minimum:
        raise ConfigError(f"'{field_name}' must be greater than or equal to {minimum}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"'{field_name}' must be less than or equal to {maximum}")
    return value


def _bool(data: dict[str, Any], key: str, default: bool, *, field_name: str) -> bool:
    raw = data.get(key, default)
    if isinstance(raw, bool):
        return raw
    parsed = parse_env_bool(raw) if isinstance(raw, str) else None
    if parsed is None:
        raise ConfigError(f"'{field_name}' must be true or false")
    return parsed


def _choice(data: dict[str, Any], key: str, default: str, *, field_name: str, choices: tuple[str, ...]) -> str:
    value = str(data.get(key, default)).strip().lower()
    if value not in choices:
        raise ConfigError(f"'{field_name}' must be one of: {', '.join(choices)}")
    return value


def _build_path_settings(data: dict[str, Any]) -> PathSettings:
    defaults = PathSettings()
    return PathSettings(
        video_dir=expand_path(data.get("video_dir", defaults.video_dir)),
        image_dir=expand_path(data.get("image_dir", defaults.image_dir)),
        video_state=expand_path(data.get("video_state", defaults.video_state)),
        image_state=expand_path(data.get("image_state", defaults.image_state)),
        mode_state=expand_path(data.get("mode_state", defaults.mode_state)),
    )


def _build_video_engine(data: dict[str, Any]) -> VideoEngineSettings:
    return VideoEngineSettings(
        type=str(data.get("type", "mpvpaper")).strip(),
        interval=_int(data, "interval", 600, field_name="video_engine.interval", minimum=1),
        options=str(data.get("options", VideoEngineSettings.options)),
    )


def _build_image_engine(data: dict[str, Any]) -> ImageEngineSettings:
    return ImageEngineSettings(
        type=str(data.get("type", "swww")).strip(),
        interval=_int(data, "interval", 300, field_name="image_engine.interval", minimum=1),
        transition=_choice(
            data, "transition", "fade", field_name="image_engine.transition", choices=VALID_TRANSITIONS
        ),
        transition_duration=_float(
            data, "transition_duration", 2.0, field_name="image_engine.transition_duration", minimum=0
        ),
        transition_fps=_int(data, "transition_fps", 60, field_name="image_engine.transition_fps", minimum=1),
        transition_step=_int(
            data, "transition_step", 20, field_name="image_engine.transition_step", minimum=1, maximum=255
        ),
        fill=_choice(data, "fill", "fill", field_name="image_engine.fill", choices=VALID_FILL_MODES),
    )


def _build_weight_settings(data: dict[str, Any]) -> WeightSettings:
    settings = WeightSettings(
        base=_float(data, "base", 100.0, field_name="weight.base", minimum=1.0),
        select_penalty=_float(data, "select_penalty", 10.0, field_name="weight.select_penalty"),
        tolerance=_float(data, "tolerance", 5.0, field_name="weight.tolerance", minimum=0.0),
        perturbation_ratio=_float(
            data, "perturbation_ratio", 0.03, field_name="weight.perturbation_ratio", minimum=0.0, maximum=1.0
        ),
        normalization_threshold=_float(
            data, "normalization_threshold", 500.0, field_name="weight.normalization_threshold"
        ),
        normalization_target=_float(data, "normalization_target", 100.0, field_name="weight.normalization_target"),
        shuffle_period=_int(data, "shuffle_period", 100, field_name="weight.shuffle_period", minimum=0),
        shuffle_intensity=_float(
            data, "shuffle_intensity", 0.1, field_name="weight.shuffle_intensity", minimum=0.0, maximum=1.0
        ),
    )
    if settings.select_penalty <= 0:
        raise ConfigError("'weight.select_penalty' must be greater than 0")
    if settings.normalization_target <= 0:
        raise ConfigError("'weight.normalization_target' must be greater than 0")
    if settings.normalization_target >= settings.normalization_threshold:
        raise ConfigError("'weight.normalization_target' must be lower than 'weight.normalization_threshold'")
    return settings


def _validate_resolution(value: str) -> str:
    text = value.strip().lower()
    if text == "auto":
        return text
    if text.isdigit() and int(text) > 0:
        return text
    parts = text.split("x")
    if len(parts) == 2 and all(part.isdigit() and int(part) > 0 for part in parts):
        return text
    raise ConfigError("'transcode.target_resolution' must be 'auto', a width like '2560', or 'WIDTHxHEIGHT'")


def _build_transcode_settings(data: dict[str, Any]) -> TranscodeSettings:
    defaults = TranscodeSettings()
    target_fps = _int(data, "target_fps", 30, field_name="transcode.target_fps")
    if target_fps not in VALID_FPS:
        raise ConfigError(f"'transcode.target_fps' must be one of: {', '.join(str(v) for v in VALID_FPS)}")

    encoder = str(data.get("encoder", "auto")).strip()
    if not encoder:
        raise ConfigError("'transcode.encoder' must not be empty")

    return TranscodeSettings(
        enabled=_bool(data, "enabled", True, field_name="transcode.enabled"),
        cache_dir=expand_path(data.get("cache_dir", defaults.cache_dir)),
        max_cache_size_mb=_int(data, "max_cache_size_mb", 10240, field_name="transcode.max_cache_size_mb", minimum=0),
        target_resolution=_validate_resolution(str(data.get("target_resolution", "auto"))),
        target_fps=target_fps,
        preload_count=_int(data, "preload_count", 3, field_name="transcode.preload_count", minimum=0),
        encoder=encoder,
        crf=_int(data, "crf", 23, field_name="transcode.crf", minimum=0, maximum=51),
        preset=_choice(data, "preset", "fast", field_name="transcode.preset", choices=VALID_PRESETS),
        preload_interval=_float(data, "preload_interval", 30.0, field_name="transcode.preload_interval", minimum=1.0),
    )


def _build_watcher_settings(data: dict[str, Any]) -> WatcherSettings:
    return WatcherSettings(
        enabled=_bool(data, "enabled", False, field_name="watcher.enabled"),
        debounce_seconds=_float(data, "debounce_seconds", 5.0, field_name="watcher.debounce_seconds", minimum=0.0),
    )


def build_config(data: dict[str, Any]) -> AppConfig:
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")
    return AppConfig(
        paths=_build_path_settings(_section(data, "paths")),
        video_engine=_build_video_engine(_section(data, "video_engine")),
        image_engine=_build_image_engine(_section(data, "image_engine")),
        weight=_build_weight_settings(_section(data, "weight")),
        transcode=_build_transcode_settings(_section(data, "transcode")),
        watcher=_build_watcher_settings(_section(data, "watcher")),
    )


def load_config(path: Path) -> AppConfig:
    try:
        data = load_yaml_file(path)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return build_config(data)


def load_or_create_config(path: Path | None = None) -> AppConfig:
    """Load the configuration, writing the commented default file when none exists."""
    target = expand_path(path or DEFAULT_CONFIG_PATH)
    if not target.exists():
        ensure_directory(target.parent)
        target.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
        LOGGER.info("Wrote default configuration to %s", target)
    return load_config(target)


DEFAULT_CONFIG_TEMPLATE = """\
# rotawall configuration

paths:
  # Directories scanned for wallpapers
  video_dir: ~/Videos/background
  image_dir: ~/Pictures/wallpapers
  # Persisted weight snapshots, one per mode
  video_state: ~/.cache/rotawall/video.json
  image_state: ~/.cache/rotawall/image.json
  # Remembers whether the daemon last ran in video or image mode
  mode_state: ~/.cache/rotawall/current_mode

video_engine:
  type: mpvpaper
  # Seconds between switches
  interval: 600
  options: "--loop --no-audio --hwdec=auto"

image_engine:
  type: swww
  interval: 300
  # fade, left, right, top, bottom, wipe, wave, grow, center, any, outer, random
  transition: fade
  transition_duration: 2.0
  transition_fps: 60
  transition_step: 20
  fill: fill

weight:
  base: 100.0
  # Larger penalty means a longer cooldown after an item is shown
  select_penalty: 10.0
  tolerance: 5.0
  # 0.03 means a +/-3% random nudge on every selection
  perturbation_ratio: 0.03
  # When the mean weight exceeds the threshold, weights are rescaled to the target mean
  normalization_threshold: 500.0
  normalization_target: 100.0
  # Every N switches a fraction of the pool is reset near the base weight (0 disables)
  shuffle_period: 100
  shuffle_intensity: 0.1

transcode:
  # Re-encode videos larger than the display into a local cache
  enabled: true
  cache_dir: ~/.cache/rotawall/transcoded
  # 0 disables the size limit
  max_cache_size_mb: 10240
  # auto, a width like 2560, or 2560x1440
  target_resolution: auto
  # 24, 30, 60, 120, 144, 165, 180, 240 (0 keeps the source frame rate)
  target_fps: 30
  # Number of upcoming videos encoded in the background
  preload_count: 3
  # auto picks h264_nvenc, then h264_vaapi, then libx264
  encoder: auto
  crf: 23
  preset: fast
  preload_interval: 30

watcher:
  # Rescan automatically when files are added or removed
  enabled: false
  debounce_seconds: 5.0
"""
