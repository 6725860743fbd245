import dataclasses
import os
from typing import Mapping, Optional

import yaml

from worker_sizing.common.logger import get_logger, emoji
from worker_sizing.core.system_resources import (
    CGROUP_V1_MEMORY_LIMIT,
    CGROUP_V2_MEMORY_MAX,
    MB,
    ResourceSnapshot,
)
from worker_sizing.core.worker_calculator import DEFAULT_POLICIES, DeploymentMode, SizingPolicy

logger = get_logger("sizing_config")

CONFIG_PATH_ENV = "WORKER_SIZING_CONFIG"
DEFAULT_CONFIG_PATH = "config/config.yaml"
DEFAULT_OVERRIDE_ENV = "MAX_WORKERS"
DEFAULT_SESSION_CREDENTIAL_ENV = ("BROWSERBASE_API_KEY", "BROWSERBASE_PROJECT_ID")

# settings given in MB -> SizingPolicy byte fields
_MB_KEYS = {
    "memory_per_worker_mb": "memory_per_worker_bytes",
    "host_memory_cap_mb": "host_memory_cap_bytes",
}
_PLAIN_KEYS = {
    "utilization_threshold",
    "min_workers",
    "max_workers",
    "forced_sequential",
    "use_cpu_candidate",
    "host_memory_basis",
}


class ConfigError(ValueError):
    pass


def load_config(path: Optional[str] = None) -> dict:
    path = path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug(f"no config at {path}, using defaults")
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(config).__name__}")
    logger.debug(emoji("CONFIG", f"loaded {path}"))
    return config


def _section(config: Mapping, key: str) -> dict:
    section = config.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return section


def get_policy(mode: DeploymentMode, config: Mapping) -> SizingPolicy:
    overrides = _section(_section(config, "policies"), mode.value)
    unknown = set(overrides) - set(_MB_KEYS) - _PLAIN_KEYS
    if unknown:
        raise ConfigError(f"unknown settings in policies.{mode.value}: {', '.join(sorted(unknown))}")

    changes = {}
    try:
        for key, value in overrides.items():
            if key in _MB_KEYS:
                changes[_MB_KEYS[key]] = None if value is None else int(float(value) * MB)
            else:
                changes[key] = value
        return dataclasses.replace(DEFAULT_POLICIES[mode], **changes)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid policies.{mode.value}: {e}") from e


def get_override_env(config: Mapping) -> str:
    return config.get("override_env") or DEFAULT_OVERRIDE_ENV


def get_cgroup_paths(config: Mapping) -> tuple:
    cgroup = _section(config, "cgroup")
    return (
        cgroup.get("v2_path") or CGROUP_V2_MEMORY_MAX,
        cgroup.get("v1_path") or CGROUP_V1_MEMORY_LIMIT,
    )


def session_credentials_present(config: Mapping, environ: Mapping) -> bool:
    names = _section(config, "session_limited").get("credential_env") or DEFAULT_SESSION_CREDENTIAL_ENV
    if not isinstance(names, (list, tuple)):
        raise ConfigError(f"session_limited.credential_env must be a list of variable names, got {names!r}")
    return all(environ.get(name) for name in names)


def select_mode(snapshot: ResourceSnapshot, config: Mapping, environ: Mapping) -> DeploymentMode:
    if session_credentials_present(config, environ):
        return DeploymentMode.SESSION_LIMITED
    if snapshot.is_container_constrained:
        return DeploymentMode.CONTAINER
    return DeploymentMode.HOST
