from typing import Any, Dict
from pathlib import Path
import copy
import logging
import os

import yaml

from entitysync.config_models import AppConfig
from entitysync.exceptions import ConfigValidationError

logger = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "ENTITYSYNC_INSERT_ALL_URL": ("sink", "base_url", str),
    "ENTITYSYNC_BATCH_SIZE": ("sync", "batch_size", int),
}


def _read_yaml(path: str) -> Dict[str, Any]:
    logger.info(f"Loading config from {path}")

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid YAML in config file: {e}", config_path=path)

    if not isinstance(cfg, dict):
        raise ConfigValidationError("Config must be a YAML dictionary/object", config_path=path)

    return cfg


def apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``cfg`` with environment overrides applied."""
    result = copy.deepcopy(cfg)
    for env_var, (section, key, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError:
            raise ConfigValidationError(f"Invalid value for {env_var}: '{raw}'", key=f"{section}.{key}")
        section_cfg = result.setdefault(section, {})
        if not isinstance(section_cfg, dict):
            raise ConfigValidationError(f"'{section}' must be a dictionary", key=section)
        section_cfg[key] = value
        logger.debug(f"Applied {env_var} override to {section}.{key}")
    return result


def load_config(path: str) -> AppConfig:
    """Load and validate a YAML config file."""
    cfg = apply_env_overrides(_read_yaml(path))
    try:
        return AppConfig.from_dict(cfg)
    except ConfigValidationError as e:
        e.details.setdefault("config_path", path)
        raise
