# karma_node/config.py
import copy
import logging
import os
from typing import Any, Dict, List

import yaml

log = logging.getLogger(__name__)

CONFIG_FILENAME = "karma_config.yaml"

# -------- Defaults (non-secret) --------
_DEFAULT: Dict[str, Any] = {
    "engine": {"owner": "admin"},
    "scoring": {
        # WEIGHT_SCALE = 10000 (100%); normalized by their sum
        "weights": {
            "code_weight": 4000,
            "governance_weight": 3000,
            "forum_weight": 2000,
            "identity_weight": 1000,
        },
        # weighted impact points per karma point
        "normalization_factor": 4,
        # basis points, MAX_TRUST = 10000
        "trust": {
            "base": 1000,
            "verified_bonus": 4000,
            "activity_cap": 5000,
            "activity_saturation": 100,
        },
    },
    "access": {"dao_gating_mode": "override"},
    "events": {"keep_events": 5000},
    "persistence": {
        "driver": "memory",
        "data_dir": "data",
        "filename": "karma_state.json",
        "keep_backups": 2,
    },
    "server": {"host": "0.0.0.0", "port": 8000},
    "cors": {
        "origins": [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    },
    "logging": {"level": "INFO"},
}

# -------- ENV overrides --------
_ENV_MAP = {
    ("engine", "owner"): ("KARMA_OWNER", str),
    ("persistence", "driver"): ("KARMA_PERSISTENCE_DRIVER", str),
    ("persistence", "data_dir"): ("KARMA_DATA_DIR", str),
    ("access", "dao_gating_mode"): ("KARMA_DAO_GATING_MODE", str),
    ("logging", "level"): ("KARMA_LOG_LEVEL", str),
    ("server", "host"): ("KARMA_HOST", str),
    ("server", "port"): ("KARMA_PORT", int),
}


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in (overlay or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    for (section, key), (env_name, cast) in _ENV_MAP.items():
        val = os.getenv(env_name)
        if val is None:
            continue
        try:
            casted = cast(val)
        except ValueError:
            log.warning("ignoring %s=%r: expected %s", env_name, val, cast.__name__)
            continue
        cfg[section] = dict(cfg.get(section, {}))
        cfg[section][key] = casted
    return cfg


def load_config(repo_root: str) -> Dict[str, Any]:
    """
    Loads repo_root/karma_config.yaml over the defaults, then applies ENV
    overrides. A missing file means defaults; an unparsable one is logged
    and ignored.
    """
    path = os.path.join(repo_root, CONFIG_FILENAME)
    cfg = copy.deepcopy(_DEFAULT)

    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            log.exception("could not read %s; using defaults", path)
            data = {}
        if isinstance(data, dict):
            cfg = _deep_merge(cfg, data)
        else:
            log.warning("%s does not contain a mapping; using defaults", path)

    cfg = _apply_env_overrides(cfg)

    origins = cfg.get("cors", {}).get("origins")
    if isinstance(origins, str):
        cfg["cors"]["origins"] = [origins]

    return cfg


# -------- Small helpers used by the app --------
def get_bind_host(cfg: Dict[str, Any]) -> str:
    return str(cfg.get("server", {}).get("host", "0.0.0.0"))


def get_bind_port(cfg: Dict[str, Any]) -> int:
    return int(cfg.get("server", {}).get("port", 8000))


def get_cors_origins(cfg: Dict[str, Any]) -> List[str]:
    return list(cfg.get("cors", {}).get("origins", []))


def get_log_level(cfg: Dict[str, Any]) -> int:
    name = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(cfg: Dict[str, Any]) -> None:
    logging.basicConfig(level=get_log_level(cfg), format="%(asctime)s [%(levelname)s] %(message)s")
