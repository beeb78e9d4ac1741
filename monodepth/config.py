"""
Application configuration.

Settings are read from a YAML file with four sections:

    capture:   frame source (webcam or image file)
    model:     depth network and device
    pipeline:  working resolution, extents, latency budget, failure policy
    logging:   console level and log file

Missing sections and keys keep their defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from loguru import logger

from monodepth.core.contracts import ChannelOrder, LayoutMode
from monodepth.core.errors import ConfigError
from monodepth.pipeline.orchestrator import PipelineConfig


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"

_CAPTURE_SOURCES = ("webcam", "image")
_LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


@dataclass
class CaptureConfig:
    """Frame source settings."""
    source: str = "webcam"
    device_index: int = 0
    width: int = 1280
    height: int = 720
    fps: int = 30
    image_path: Optional[str] = None


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = "logs/monodepth.log"


@dataclass
class AppConfig:
    """Complete application configuration."""
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Keys of the `model` section and the PipelineConfig field each maps to
_MODEL_KEYS = {
    "path": "model_path",
    "metadata_path": "metadata_path",
    "layout": "layout_mode",
    "channel_order": "channel_order",
    "device": "device",
    "warmup_iterations": "warmup_iterations",
}

_PIPELINE_KEYS = (
    "desired_width",
    "desired_height",
    "calculate_depth_extents",
    "max_tick_latency_ms",
    "stall_log_threshold",
    "fail_after_consecutive_skips",
    "profile_interval_s",
)


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load configuration from file.

    Falls back to config/settings.yaml, then to built-in defaults.

    Raises:
        ConfigError: unreadable file or invalid values
    """
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
    elif DEFAULT_CONFIG_PATH.exists():
        path = DEFAULT_CONFIG_PATH
    else:
        logger.debug("No config file found, using defaults")
        return AppConfig()

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed config file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    logger.debug(f"Loaded config from {path}")
    return config_from_dict(raw)


def config_from_dict(raw: Dict[str, Any]) -> AppConfig:
    """Build and validate an AppConfig from parsed YAML."""
    for key in raw:
        if key not in ("capture", "model", "pipeline", "logging"):
            logger.warning(f"Ignoring unknown config section '{key}'")

    config = AppConfig()

    capture = _section(raw, "capture")
    for f in fields(CaptureConfig):
        if f.name in capture:
            setattr(config.capture, f.name, capture.pop(f.name))
    _warn_unknown("capture", capture)

    model = _section(raw, "model")
    for key, attr in _MODEL_KEYS.items():
        if key in model:
            setattr(config.pipeline, attr, model.pop(key))
    _warn_unknown("model", model)

    pipeline = _section(raw, "pipeline")
    for key in _PIPELINE_KEYS:
        if key in pipeline:
            setattr(config.pipeline, key, pipeline.pop(key))
    _warn_unknown("pipeline", pipeline)

    logging_section = _section(raw, "logging")
    for f in fields(LoggingConfig):
        if f.name in logging_section:
            setattr(config.logging, f.name, logging_section.pop(f.name))
    _warn_unknown("logging", logging_section)

    validate(config)
    return config


def validate(config: AppConfig) -> AppConfig:
    """
    Check value ranges and coerce enum strings in place.

    Raises:
        ConfigError: on the first invalid value
    """
    capture = config.capture
    if capture.source not in _CAPTURE_SOURCES:
        raise ConfigError(f"capture.source must be one of {_CAPTURE_SOURCES}, got {capture.source!r}")
    if capture.source == "image" and not capture.image_path:
        raise ConfigError("capture.image_path is required when capture.source is 'image'")
    for name in ("width", "height", "fps"):
        _require_positive_int(f"capture.{name}", getattr(capture, name))

    pipeline = config.pipeline
    _require_positive_int("pipeline.desired_width", pipeline.desired_width)
    _require_positive_int("pipeline.desired_height", pipeline.desired_height)
    _require_positive_int("pipeline.stall_log_threshold", pipeline.stall_log_threshold)
    if pipeline.fail_after_consecutive_skips is not None:
        _require_positive_int("pipeline.fail_after_consecutive_skips", pipeline.fail_after_consecutive_skips)
    if not isinstance(pipeline.warmup_iterations, int) or pipeline.warmup_iterations < 0:
        raise ConfigError(f"model.warmup_iterations must be >= 0, got {pipeline.warmup_iterations!r}")
    if not isinstance(pipeline.calculate_depth_extents, bool):
        raise ConfigError("pipeline.calculate_depth_extents must be true or false")

    for name in ("max_tick_latency_ms", "profile_interval_s"):
        value = getattr(pipeline, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"pipeline.{name} must be a positive number, got {value!r}")
        setattr(pipeline, name, float(value))

    pipeline.layout_mode = _coerce_enum("model.layout", LayoutMode, pipeline.layout_mode)
    pipeline.channel_order = _coerce_enum("model.channel_order", ChannelOrder, pipeline.channel_order)

    level = str(config.logging.level).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {_LOG_LEVELS}, got {config.logging.level!r}")
    config.logging.level = level

    return config


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return dict(value)


def _warn_unknown(section: str, leftover: Dict[str, Any]) -> None:
    for key in leftover:
        logger.warning(f"Ignoring unknown config key '{section}.{key}'")


def _require_positive_int(name: str, value: Any) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"{name} must be a positive integer, got {value!r}")


def _coerce_enum(name: str, enum_cls, value: Any):
    if value is None or isinstance(value, enum_cls):
        return value
    if str(value).lower() == "auto":
        return None
    try:
        return enum_cls(str(value).lower())
    except ValueError as e:
        choices = ["auto"] + [m.value for m in enum_cls]
        raise ConfigError(f"{name} must be one of {choices}, got {value!r}") from e
