from typing import Any, Dict, Optional
from importlib import resources
import os
import yaml

from chatstream_service.core.errors import ConfigError


ENV_PREFIX = "CHATSTREAM__"
IGNORE_DEV_ENV = "CHATSTREAM_IGNORE_DEV_CONFIG"


def deep_merge(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of base with override laid over it: nested dicts merge, anything else replaces."""
    merged = dict(base)
    for key, value in (override or {}).items():
        current = merged.get(key)
        merged[key] = deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def read_yaml(path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level, got {type(data).__name__}")
    return data


def apply_env_overrides(cfg: Dict[str, Any], environ=None) -> Dict[str, Any]:
    """CHATSTREAM__A__B=val -> cfg['a']['b']=parsed(val)"""
    environ = os.environ if environ is None else environ
    for key, val in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        parts = key[len(ENV_PREFIX) :].split("__")
        parts = [p.strip().lower() for p in parts if p.strip()]
        if not parts:
            continue
        sub = cfg
        for p in parts[:-1]:
            nxt = sub.get(p)
            if not isinstance(nxt, dict):
                nxt = sub[p] = {}
            sub = nxt
        # parse value as YAML for numbers/bools/lists/dicts support
        try:
            parsed = yaml.safe_load(val)
        except yaml.YAMLError:
            parsed = val
        sub[parts[-1]] = parsed
    return cfg


def overlay_dev(cfg: Dict[str, Any], dev_cfg: Dict[str, Any]) -> Dict[str, Any]:
    """dev.yml merges over the defaults, or stands alone when it sets `_replaces_default: true`."""
    dev_cfg = dict(dev_cfg)
    if dev_cfg.pop("_replaces_default", False):
        return dev_cfg
    return deep_merge(cfg, dev_cfg)


def dev_config_ignored(environ=None) -> bool:
    environ = os.environ if environ is None else environ
    return str(environ.get(IGNORE_DEV_ENV, "false")).strip().lower() in ("true", "1", "yes")


def load_settings(config_dir=None, environ=None) -> Dict[str, Any]:
    """
    Load default.yml, overlay dev.yml if present, then apply env overrides using
    CHATSTREAM__A__B=val -> cfg['a']['b']=parsed(val)
    `config_dir` defaults to the packaged chatstream_service.config directory.
    """
    root = config_dir if config_dir is not None else resources.files("chatstream_service.config")
    cfg = read_yaml(root / "default.yml")

    dev_file = root / "dev.yml"
    if dev_file.is_file() and not dev_config_ignored(environ):
        cfg = overlay_dev(cfg, read_yaml(dev_file))

    return apply_env_overrides(cfg, environ)


def section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    return cfg.get(name, {}) or {}
