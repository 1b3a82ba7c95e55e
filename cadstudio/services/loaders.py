"""Config and shop-profile loading for analyze requests.

Configs are TOML (or JSON) documents under the toolchain root. Shop profiles
are JSON files in ``configs/profiles/`` and are memoized for a short TTL.
"""

import datetime
import json
import logging
import tomllib
from pathlib import Path
from typing import Any

from cachetools import TTLCache

from cadstudio.config import settings

logger = logging.getLogger(__name__)

_profile_cache: TTLCache = TTLCache(maxsize=64, ttl=settings.profile_cache_ttl_seconds)


def resolve_config_path(root: Path, config_path: str) -> Path:
    """Resolve a request path against the root. Raises ValueError if it escapes."""
    root = Path(root).resolve()
    full = (root / config_path).resolve()
    if not full.is_relative_to(root):
        raise ValueError(f"configPath escapes the project root: {config_path}")
    return full


def load_config(path: Path) -> dict[str, Any]:
    """Load a TOML or JSON analysis config."""
    path = Path(path)
    if path.suffix.lower() == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        with path.open("rb") as f:
            data = tomllib.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be a table/object: {path.name}")
    return _json_clean(data)


def _json_clean(value: Any) -> Any:
    """TOML date/time values become ISO strings so configs stay JSON-serializable."""
    if isinstance(value, dict):
        return {k: _json_clean(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_clean(v) for v in value]
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    return value


def load_shop_profile(root: Path, profile_name: str | None) -> dict[str, Any] | None:
    """Return the named shop profile, or None for empty/_default/unreadable."""
    if not profile_name or profile_name == "_default":
        return None
    if "/" in profile_name or "\\" in profile_name or profile_name.startswith("."):
        logger.warning("Shop profile name rejected | name=%s", profile_name[:100])
        return None

    cache_key = (str(root), profile_name)
    if cache_key in _profile_cache:
        return _profile_cache[cache_key]

    profile_path = Path(root) / "configs" / "profiles" / f"{profile_name}.json"
    try:
        profile = json.loads(profile_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Shop profile unavailable | name=%s | %s", profile_name, str(e)[:100])
        return None

    _profile_cache[cache_key] = profile
    return profile


def clear_profile_cache() -> None:
    _profile_cache.clear()


def list_example_configs(root: Path) -> list[str]:
    examples = Path(root) / "configs" / "examples"
    try:
        return sorted(p.name for p in examples.iterdir() if p.suffix == ".toml")
    except OSError:
        return []
