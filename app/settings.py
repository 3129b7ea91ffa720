from constants import *
import copy
import yaml
import os

import logging

# Retrieve main logger
logger = logging.getLogger("main")


# Cache variable
_cached_settings = None


def _merge_defaults(settings):
    # Deep merge with defaults to ensure new keys are present
    merged_settings = copy.deepcopy(DEFAULT_SETTINGS)
    for section, values in (settings or {}).items():
        if isinstance(values, dict) and section in merged_settings and isinstance(merged_settings[section], dict):
            merged_settings[section].update(values)
        else:
            merged_settings[section] = values
    return merged_settings


def _apply_env_overrides(settings):
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            settings.setdefault(section, {})[key] = value
    return settings


def load_settings(force=False, config_file=None):
    global _cached_settings

    if _cached_settings and not force and config_file is None:
        return _cached_settings

    config_file = config_file or CONFIG_FILE

    if os.path.exists(config_file):
        logger.debug(f"Reading configuration file: {config_file}")
        with open(config_file, "r") as yaml_file:
            settings = _merge_defaults(yaml.safe_load(yaml_file) or {})
    else:
        settings = copy.deepcopy(DEFAULT_SETTINGS)
        os.makedirs(os.path.dirname(config_file), exist_ok=True)
        with open(config_file, "w") as yaml_file:
            yaml.dump(settings, yaml_file)

    settings = _apply_env_overrides(settings)

    _cached_settings = settings
    return settings


def verify_settings(section, data):
    success = True
    errors = []
    if section == "store":
        backend = data.get("backend")
        if backend not in ("directory", "github"):
            success = False
            errors.append({"path": "store/backend", "error": f"Unknown store backend {backend}."})
        elif backend == "github":
            for key in ("owner", "repo", "token"):
                if not data.get(key):
                    success = False
                    errors.append({"path": f"store/{key}", "error": f"store.{key} is required for the github backend."})
    elif section == "reconciliation":
        if float(data.get("interval_hours", 0)) <= 0:
            success = False
            errors.append({"path": "reconciliation/interval_hours", "error": "Interval must be positive."})
    return success, errors


def reload_conf():
    """Reload application settings cache"""
    global _cached_settings
    _cached_settings = None
    return load_settings(force=True)
