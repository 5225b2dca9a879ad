"""Configuration loading for gencar (.gencar.yml and publish settings)."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .dag.nodes import DEFAULT_CHUNK_SIZE

CONFIG_FILENAME = ".gencar.yml"
PUBLISH_CONFIG_ENV = "GENCAR_PUBLISH_CONFIG"

RESULT_COMPACT = "compact"
RESULT_VERBOSE = "verbose"
_RESULT_MODES = {RESULT_COMPACT, RESULT_VERBOSE}


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be parsed."""


@dataclass(frozen=True)
class PublishConfig:
    """Object store settings used to publish finished archives."""

    bucket: Optional[str] = None
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    region: Optional[str] = None
    key_prefix: str = ""
    sim: bool = False


@dataclass(frozen=True)
class GenerateSettings:
    """Effective options for one `gencar generate` batch."""

    parent: Optional[Path] = None
    input: str = "-"
    input_json: Optional[Path] = None
    single: bool = False
    piece_size: int = 0
    out_dir: Path = Path(".")
    scratch_dir: Optional[Path] = None
    parallel: int = 1
    chunk_size: int = DEFAULT_CHUNK_SIZE
    result: str = RESULT_COMPACT
    publish: Optional[PublishConfig] = None

    @property
    def effective_scratch_dir(self) -> Path:
        return self.scratch_dir if self.scratch_dir is not None else self.out_dir

    @property
    def verbose_result(self) -> bool:
        return self.result == RESULT_VERBOSE

    def merged(self, **overrides: Any) -> "GenerateSettings":
        """Return a copy with every non-None override applied."""
        applied = {key: value for key, value in overrides.items() if value is not None}
        settings = replace(self, **applied)
        _validate_settings(settings)
        return settings


def load_config(config_path: Path) -> GenerateSettings:
    """Load default generate settings from a `.gencar.yml` file or directory."""
    config_file = _resolve_config_path(config_path)
    if not config_file.exists():
        return GenerateSettings()

    data = _read_yaml(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    root = config_file.parent
    settings = GenerateSettings(
        parent=_as_path(data.get("parent"), root),
        input=_as_str(data.get("input")) or "-",
        input_json=_as_path(data.get("input_json"), root),
        single=_as_bool(data.get("single"), "single") or False,
        piece_size=_as_int(data.get("piece_size"), "piece_size") or 0,
        out_dir=_as_path(data.get("out_dir"), root) or Path("."),
        scratch_dir=_as_path(data.get("tmp_dir"), root),
        parallel=_as_int(data.get("parallel"), "parallel") or 1,
        chunk_size=_as_int(data.get("chunk_size"), "chunk_size") or DEFAULT_CHUNK_SIZE,
        result=_as_str(data.get("result")) or RESULT_COMPACT,
        publish=_publish_from_mapping(data.get("publish")),
    )
    _validate_settings(settings)
    return settings


def load_publish_config(
    path: Path | None = None, *, environ: Mapping[str, str] | None = None
) -> Optional[PublishConfig]:
    """Load publish settings from ``path`` or the file named by GENCAR_PUBLISH_CONFIG."""
    if path is None:
        env = os.environ if environ is None else environ
        configured = env.get(PUBLISH_CONFIG_ENV, "").strip()
        if not configured:
            return None
        path = Path(configured)

    path = path.expanduser()
    if not path.exists():
        raise ConfigError(f"Publish config not found: {path}")
    data = _read_yaml(path)
    publish = _publish_from_mapping(data)
    if publish is None:
        raise ConfigError(f"Publish config {path} must contain a mapping")
    return publish


def _publish_from_mapping(value: Any) -> Optional[PublishConfig]:
    if not isinstance(value, dict) or not value:
        return None
    publish = PublishConfig(
        bucket=_as_str(value.get("bucket")),
        endpoint_url=_as_str(value.get("endpoint_url")),
        access_key_id=_as_str(value.get("access_key_id")),
        secret_access_key=_as_str(value.get("secret_access_key")),
        region=_as_str(value.get("region")),
        key_prefix=_as_str(value.get("key_prefix")) or "",
        sim=_as_bool(value.get("sim"), "publish.sim") or False,
    )
    if not publish.sim and not publish.bucket:
        raise ConfigError("publish.bucket is required unless publish.sim is enabled")
    return publish


def _validate_settings(settings: GenerateSettings) -> None:
    if settings.piece_size < 0:
        raise ConfigError("piece_size must not be negative")
    if settings.parallel < 1:
        raise ConfigError("parallel must be at least 1")
    if settings.chunk_size < 1:
        raise ConfigError("chunk_size must be positive")
    if settings.result not in _RESULT_MODES:
        raise ConfigError(
            f"result must be one of {sorted(_RESULT_MODES)}, got {settings.result!r}"
        )


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_yaml(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded or {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None


def _as_path(value: Any, root: Path) -> Optional[Path]:
    text = _as_str(value)
    if not text:
        return None
    path = Path(text).expanduser()
    return path if path.is_absolute() else root / path


def _as_int(value: Any, key: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
    raise ConfigError(f"{key} must be an integer")


def _as_bool(value: Any, key: str) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    raise ConfigError(f"{key} must be a boolean")


__all__ = [
    "CONFIG_FILENAME",
    "ConfigError",
    "GenerateSettings",
    "PUBLISH_CONFIG_ENV",
    "PublishConfig",
    "RESULT_COMPACT",
    "RESULT_VERBOSE",
    "load_config",
    "load_publish_config",
]
