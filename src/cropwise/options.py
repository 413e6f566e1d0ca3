"""Resolved engine configuration plus config-file and environment helpers."""

import dataclasses
import json
import math
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from cropwise.errors import InvalidConfigError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

YOLO_MODEL_ENV_VAR = "CROPWISE_YOLO_MODEL"
YUNET_MODEL_ENV_VAR = "CROPWISE_YUNET_MODEL"
MODEL_DIR_ENV_VAR = "CROPWISE_MODEL_DIR"
WORKERS_ENV_VAR = "CROPWISE_WORKERS"
DEFAULT_MODEL_DIR = Path.home() / ".cache" / "cropwise" / "models"


@dataclass(frozen=True)
class CropOptions:
    """Every tunable of the crop engine, with its default."""

    # Raster sampler
    analysis_max_dimension: int = 256

    # Candidate sweep
    min_scale: float = 0.9
    max_scale: float = 1.0
    scale_step: float = 0.95
    step: int = 8

    # Channel weights
    detail_weight: float = 1.0
    skin_weight: float = 0.6
    saturation_weight: float = 0.3
    boost_weight: float = 10.0
    outside_penalty: float = 0.5

    # Penalties
    boring_threshold: float = 0.02
    boring_weight: float = 0.15
    edge_band: float = 0.05
    edge_weight: float = 0.3

    # Spatial prior
    thirds_weight: float = 0.1
    thirds_sigma: float = 0.12
    center_weight: float = 0.02

    # Skin classifier
    skin_color: tuple[float, float, float] = (0.78, 0.57, 0.44)
    skin_threshold: float = 0.8
    skin_brightness_min: float = 0.2
    skin_brightness_max: float = 1.0

    # Saturation classifier
    saturation_threshold: float = 0.4
    saturation_brightness_min: float = 0.05
    saturation_brightness_max: float = 0.9

    workers: int = 1
    debug: bool = False

    def validate(self) -> "CropOptions":
        """Raise InvalidConfigError for the first inconsistent field."""
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if isinstance(value, float) and not math.isfinite(value):
                raise InvalidConfigError(f"{f.name} must be finite, got {value}", f.name, value)

        if self.analysis_max_dimension < 1:
            _bad("analysis_max_dimension", self.analysis_max_dimension, "must be >= 1")
        if not 0.0 < self.max_scale <= 1.0:
            _bad("max_scale", self.max_scale, "must be in (0, 1]")
        if not 0.0 < self.min_scale <= self.max_scale:
            _bad("min_scale", self.min_scale, f"must be in (0, max_scale={self.max_scale}]")
        if self.min_scale < self.max_scale and not 0.0 < self.scale_step < 1.0:
            _bad("scale_step", self.scale_step, "must be in (0, 1) when min_scale < max_scale")
        if self.step < 1:
            _bad("step", self.step, "must be >= 1")
        if self.outside_penalty < 0:
            _bad("outside_penalty", self.outside_penalty, "must be >= 0")
        if not 0.0 <= self.edge_band < 0.5:
            _bad("edge_band", self.edge_band, "must be in [0, 0.5)")
        if self.thirds_sigma <= 0:
            _bad("thirds_sigma", self.thirds_sigma, "must be > 0")
        if not 0.0 <= self.skin_threshold < 1.0:
            _bad("skin_threshold", self.skin_threshold, "must be in [0, 1)")
        if not 0.0 <= self.saturation_threshold < 1.0:
            _bad("saturation_threshold", self.saturation_threshold, "must be in [0, 1)")
        if len(self.skin_color) != 3 or not any(c > 0 for c in self.skin_color):
            _bad("skin_color", self.skin_color, "must be three components, not all zero")
        if self.workers < 1:
            _bad("workers", self.workers, "must be >= 1")
        return self

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def _bad(name: str, value: object, reason: str) -> None:
    raise InvalidConfigError(f"Invalid {name}={value!r}: {reason}", name, value)


_FIELD_NAMES = frozenset(f.name for f in dataclasses.fields(CropOptions))

# Config spellings of the CLI flag names
_KEY_ALIASES = {"analysis_size": "analysis_max_dimension"}


def _snake_case(key: str) -> str:
    """minScale -> min_scale; already snake_case keys pass through."""
    key = key.replace("-", "_")
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _coerce(name: str, value: object) -> object:
    default = getattr(CropOptions, name)
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(default, int):
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, tuple):
            return tuple(float(v) for v in value)
    except (TypeError, ValueError) as e:
        raise InvalidConfigError(f"Invalid value for {name}: {value!r}", name, value) from e
    return value


def options_from_mapping(
    mapping: Mapping[str, object], base: Optional[CropOptions] = None
) -> CropOptions:
    """Overlay a config mapping (snake_case or camelCase keys) onto base options."""
    updates: dict[str, object] = {}
    unknown: list[str] = []
    for raw_key, value in mapping.items():
        key = _snake_case(str(raw_key))
        key = _KEY_ALIASES.get(key, key)
        if key not in _FIELD_NAMES:
            unknown.append(str(raw_key))
            continue
        if value is None:
            continue
        updates[key] = _coerce(key, value)

    if unknown:
        raise InvalidConfigError(
            f"Unknown option(s): {', '.join(sorted(unknown))}", "options", unknown
        )
    return dataclasses.replace(base or CropOptions(), **updates)


def load_config_file(path: Path) -> dict:
    """Read a JSON config file (the `--config config.json` of the CLI)."""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidConfigError(f"Cannot read config file {path}: {e}", "config", str(path)) from e
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Config file {path} is not valid JSON: {e}", "config", str(path)) from e
    if not isinstance(data, dict):
        raise InvalidConfigError(f"Config file {path} must hold a JSON object", "config", str(path))
    return data


# ---------------------------------------------------------------------------
# Environment helpers
# ---------------------------------------------------------------------------


def _read_env_file(env_path: Path) -> dict[str, str]:
    """Parse a simple .env file into key/value pairs."""
    values: dict[str, str] = {}
    try:
        content = env_path.read_text(encoding="utf-8")
    except OSError:
        return values

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue

        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        values[key] = value

    return values


def _resolve_env_string(var_name: str, search_dir: Optional[Path] = None) -> Optional[str]:
    """Resolve a string env var from environment first, then .env files."""
    env_value = (os.environ.get(var_name) or "").strip()
    if env_value:
        return env_value

    candidates = [Path.cwd() / ".env"]
    if search_dir is not None:
        candidates.append(search_dir / ".env")

    seen: set[Path] = set()
    for env_file in candidates:
        resolved = env_file.resolve()
        if resolved in seen or not env_file.exists():
            continue
        seen.add(resolved)

        value = (_read_env_file(env_file).get(var_name) or "").strip()
        if value:
            os.environ.setdefault(var_name, value)
            print(f"  📝 Loaded {var_name} from {env_file}", file=sys.stderr)
            return value
    return None


def _resolve_env_int(var_name: str, default: int) -> int:
    raw = (os.environ.get(var_name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def resolve_workers() -> int:
    """Resolve the default worker count for candidate scoring."""
    return min(16, max(1, _resolve_env_int(WORKERS_ENV_VAR, 1)))


def resolve_model_dir(search_dir: Optional[Path] = None) -> Path:
    """Resolve the directory detector weights are cached in."""
    override = _resolve_env_string(MODEL_DIR_ENV_VAR, search_dir=search_dir)
    if override:
        return Path(override).expanduser()
    return DEFAULT_MODEL_DIR


def resolve_model_override(var_name: str, search_dir: Optional[Path] = None) -> Optional[Path]:
    """Explicit local model path from env or .env, if any."""
    value = _resolve_env_string(var_name, search_dir=search_dir)
    return Path(value).expanduser() if value else None


@dataclass(frozen=True)
class RenderOptions:
    """Output settings for the final crop/resize/encode pipeline."""

    width: int
    height: int
    quality: Optional[int] = 90
    output_format: str = "jpg"
    unsharp: str = "2x0.5+1+0.008"
