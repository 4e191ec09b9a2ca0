import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from clusterbox.config.models import ClusterboxSettings, TopologySpec

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")

ALLOWED_KEYS = {"clusterbox", "topology", "binaries"}


def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)


def load_config(path: Optional[Path]) -> Dict[str, Any]:
    """
    Load clusterbox.yaml with environment variable interpolation.

    Only the keys clusterbox, topology and binaries are kept. A missing file
    yields an empty dict; a file that is not valid YAML raises ValueError.
    """
    if path is None or not path.exists():
        return {}

    content = path.read_text(encoding="utf-8")
    try:
        full_config = yaml.safe_load(interpolate_env_vars(content)) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(full_config, dict):
        raise ValueError(f"Config file {path} must contain a mapping.")

    return {k: v for k, v in full_config.items() if k in ALLOWED_KEYS}


def build_settings(config_dict: Dict[str, Any], **overrides: Any) -> ClusterboxSettings:
    """Build settings from the 'clusterbox' section; explicit overrides win over file and env."""
    values = dict(config_dict.get("clusterbox") or {})
    values.update({k: v for k, v in overrides.items() if v is not None})
    return ClusterboxSettings(**values)


def build_topology(config_dict: Dict[str, Any]) -> TopologySpec:
    """Build the topology from the 'topology' and 'binaries' sections."""
    return TopologySpec.from_config(
        config_dict.get("topology") or {},
        config_dict.get("binaries") or {},
    )
