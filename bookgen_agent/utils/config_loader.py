"""
Configuration loader module for Bookgen Agent.

Handles loading and validation of the environment-specific global config
and the prompt template file, with defaults and ${VAR} interpolation.
"""

import os
import re
from copy import deepcopy
from typing import Dict, Any, Optional

import yaml
from dotenv import load_dotenv


DEFAULTS: Dict[str, Any] = {
    "paths": {
        "publish": "output/publish",
        "audio": "output/audio",
        "images": "output/images",
    },
    "worker": {
        "poll_interval_ms": 1000,
        "lease_seconds": 600,
    },
    "generation": {
        "outline_model": "gpt-4o",
        "chapter_model": "gpt-4o-mini",
        "image_model": None,
        "temperature": 0.7,
        "default_chapter_count": 10,
        "default_chapter_size": "medium",
        "chapter_sizes": {
            "small": [300, 600],
            "medium": [800, 1200],
            "large": [1500, 2500],
        },
        # USD per 1k tokens
        "pricing": {
            "gpt-4o": {"prompt": 0.0025, "completion": 0.01},
            "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
        },
    },
    "audiobook": {
        "default_voice": "alloy",
        "default_model": "tts-1",
        "voices": ["alloy", "echo", "fable", "onyx", "nova", "shimmer"],
        # USD per 1k characters
        "models": {"tts-1": 0.015, "tts-1-hd": 0.030},
        "max_chars_per_request": 4000,
        "retail_sample_characters": 1800,
    },
    "credits": {
        "quota_bound_roles": ["writer"],
        "generation_cost": 1,
    },
    "api": {
        "openai_base_url": "https://api.openai.com/v1",
        "openai_api_key": "",
        "perplexity_base_url": "https://api.perplexity.ai",
        "perplexity_api_key": "",
        "timeout_seconds": 120,
    },
}

CHAPTER_SIZES = ("small", "medium", "large")


def load_global_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load and validate global configuration.

    Loads ``.env`` first. When no path is given, BOOKGEN_ENV selects
    ``config/global_{env}.yaml``.

    Args:
        path: Explicit config file. Takes precedence over BOOKGEN_ENV.

    Returns:
        Config dictionary with defaults applied and env vars interpolated.

    Raises:
        ValueError: If the file is missing, the YAML is invalid, or a
            required key is absent.

    Examples:
        >>> cfg = load_global_config("config/global_alpha.yaml")
        >>> cfg["worker"]["lease_seconds"]
        600
    """
    load_dotenv()

    if path is None:
        env = os.getenv("BOOKGEN_ENV")
        if not env:
            raise ValueError(
                "BOOKGEN_ENV environment variable not set. "
                "Set BOOKGEN_ENV=alpha or BOOKGEN_ENV=prod in .env"
            )
        path = f"config/global_{env}.yaml"

    if not os.path.exists(path):
        raise ValueError(f"Config file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file {path}: {e}")

    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    config = _merge_defaults(DEFAULTS, _interpolate_env_vars(raw))
    _validate_config(config)
    return config


def _interpolate_env_vars(obj):
    """Replace ${VAR} and ${VAR:-default} in every string value."""
    if isinstance(obj, dict):
        return {key: _interpolate_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_env_vars(item) for item in obj]
    if isinstance(obj, str):
        def replace_var(match):
            var_expr = match.group(1)
            if ":-" in var_expr:
                var_name, default_value = var_expr.split(":-", 1)
                return os.getenv(var_name, default_value)
            return os.getenv(var_expr, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_var, obj)
    return obj


def _merge_defaults(defaults: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
    result = deepcopy(defaults)
    for key, value in config.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_defaults(result[key], value)
        else:
            result[key] = value
    return result


def _validate_config(config: Dict[str, Any]) -> None:
    if "database" not in config["paths"]:
        raise ValueError("Missing required path key: database")

    lease = config["worker"]["lease_seconds"]
    if not isinstance(lease, int) or lease <= 0:
        raise ValueError(f"worker.lease_seconds must be a positive integer, got: {lease}")

    sizes = config["generation"]["chapter_sizes"]
    for size in CHAPTER_SIZES:
        if size not in sizes:
            raise ValueError(f"Missing chapter size range: {size}")
        low, high = sizes[size]
        if low > high:
            raise ValueError(f"Invalid word range for {size}: {low}-{high}")

    models = config["audiobook"]["models"]
    if not models:
        raise ValueError("At least one audiobook model must be configured")
    if config["audiobook"]["default_model"] not in models:
        raise ValueError(
            f"Default audiobook model {config['audiobook']['default_model']} has no rate"
        )
    if config["audiobook"]["default_voice"] not in config["audiobook"]["voices"]:
        raise ValueError(
            f"Default voice {config['audiobook']['default_voice']} is not a known voice"
        )


def load_prompts(path: str) -> Dict[str, Dict[str, Any]]:
    """Load and validate prompt templates from YAML.

    Each entry must carry a ``template`` string and a
    ``required_variables`` list.

    Args:
        path: Path to the prompts YAML file.

    Returns:
        Dictionary keyed by prompt name.

    Raises:
        ValueError: If file not found, invalid YAML, or invalid entry.

    Examples:
        >>> prompts = load_prompts("bookgen_agent/config/prompts.yaml")
        >>> "chapter_text" in prompts
        True
    """
    if not os.path.exists(path):
        raise ValueError(f"Prompts file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            prompts = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in prompts file: {e}")

    for name, entry in prompts.items():
        if not isinstance(entry, dict):
            raise ValueError(f"Prompt {name} must be a dictionary")
        if "template" not in entry:
            raise ValueError(f"Prompt {name} missing template")
        if "required_variables" not in entry:
            raise ValueError(f"Prompt {name} missing required_variables")
        if not isinstance(entry["required_variables"], list):
            raise ValueError(f"Prompt {name} required_variables must be a list")

    return prompts
