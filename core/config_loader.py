from __future__ import annotations

import json
import os
import tomllib
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.config_defaults import default_config
from core.utils import REPO_ROOT

ENV_PREFIX = "TR__"
CONFIG_PATH_ENV = "TR_CONFIG_TOML"


def _load_toml(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _parse_env_value(raw: str) -> Any:
    value = (raw or "").strip()
    if value == "":
        return ""
    try:
        return json.loads(value)
    except ValueError:
        return value


def _set_path(cfg: Dict[str, Any], path: Sequence[str], value: Any) -> None:
    cursor = cfg
    for segment in path[:-1]:
        node = cursor.get(segment)
        if not isinstance(node, dict):
            node = {}
            cursor[segment] = node
        cursor = node
    cursor[path[-1]] = value


def _split_csv(raw: str) -> List[str]:
    return [s.strip() for s in raw.split(",") if s.strip()]


# env name -> (config path, parser); applied before TR__ overrides
LEGACY_ENV: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "PG_DSN": (("postgres", "dsn"), str),
    "NATS_SERVERS": (("nats", "servers"), _split_csv),
    "PROVIDER_BASE_URL": (("provider", "base_url"), str),
}


def apply_env_overrides(
    cfg: Dict[str, Any],
    *,
    prefix: str = ENV_PREFIX,
    separator: str = "__",
) -> Dict[str, Any]:
    """Overlay `TR__SECTION__KEY=value` variables onto the raw config dict.

    Values are JSON-decoded when possible, so `TR__RETRY__MAX_ATTEMPTS=5`
    yields an int and `TR__NATS__SERVERS='["nats://a:4222"]'` a list.
    """
    for env_key, env_val in os.environ.items():
        if not env_key.startswith(prefix):
            continue
        path = [p.strip().lower() for p in env_key[len(prefix) :].split(separator) if p.strip()]
        if path:
            _set_path(cfg, path, _parse_env_value(env_val))
    return cfg


def apply_legacy_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    for env_key, (path, parse) in LEGACY_ENV.items():
        raw = (os.environ.get(env_key) or "").strip()
        if not raw:
            continue
        value = parse(raw)
        if value:
            _set_path(cfg, path, value)
    return cfg


def apply_defaults(cfg: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    def _deep_apply(target: Dict[str, Any], src: Dict[str, Any]) -> None:
        for key, value in (src or {}).items():
            if key not in target or target[key] is None:
                if isinstance(value, dict):
                    target[key] = {}
                    _deep_apply(target[key], value)
                else:
                    target[key] = value
                continue
            if isinstance(value, dict) and isinstance(target.get(key), dict):
                _deep_apply(target[key], value)

    _deep_apply(cfg, defaults or {})
    return cfg


def _load_raw_config(
    path: Optional[Path] = None,
    *,
    env_prefix: str = ENV_PREFIX,
    env_separator: str = "__",
) -> Dict[str, Any]:
    cfg: Dict[str, Any] = {}
    cfg_path = path or Path(os.environ.get(CONFIG_PATH_ENV) or (REPO_ROOT / "config.toml"))
    if cfg_path.exists():
        cfg = _load_toml(cfg_path)

    apply_legacy_env_overrides(cfg)
    apply_env_overrides(cfg, prefix=env_prefix, separator=env_separator)
    apply_defaults(cfg, default_config())
    return cfg
