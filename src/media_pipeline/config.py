import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import MediaPipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
CONFIG_ENV_VAR = "MEDIA_PIPELINE_CONFIG"


def get_config_value(config: Union[MediaPipelineConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: MediaPipelineConfig model or dict
        path: Dot-separated path like "retry.max_attempts"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, MediaPipelineConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Union[str, Path]] = None,
) -> MediaPipelineConfig:
    """
    Resolve config: Default < Local < CLI

    The local layer is ``config/local.yaml``, or the file given by
    ``config_path`` / the MEDIA_PIPELINE_CONFIG environment variable.
    Returns a validated MediaPipelineConfig; invalid values raise
    pydantic.ValidationError.
    """
    cli_args = cli_args or {}

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    local_path = config_path or os.environ.get(CONFIG_ENV_VAR)
    local_data = load_yaml(Path(local_path) if local_path else LOCAL_CONFIG_PATH)
    config_data = merge_dicts(config_data, local_data)

    # 3. Validate, then apply CLI overrides
    config = MediaPipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
