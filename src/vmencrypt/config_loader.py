"""
Configuration Loader Module

Handles loading and parsing YAML configuration files for disk-encryption deployments.
"""

import copy
from pathlib import Path
from typing import Dict, Any, Optional
import yaml


DEFAULTS: Dict[str, Any] = {
    'admin_username': 'localAdminUser',
    'key_name': 'encryptKey',
    'ade': {
        'enabled': True,
        'name': 'vmAde',
        'use_cmk': True,
    },
    'sse': {
        'enabled': True,
        'name': 'vmSse',
    },
    'vm': {
        'size': 'Standard_D2s_v3',
        'os_disk_size_gb': 128,
        'data_disk_size_gb': 128,
    },
    'deployment': {
        'name': 'vm-encryption',
    },
    'modules': {},
    'tags': {},
}


def merge_defaults(config: Dict[str, Any], defaults: Dict[str, Any] = DEFAULTS) -> Dict[str, Any]:
    """Return ``config`` with missing keys filled from ``defaults`` (one level of nesting)."""
    merged = copy.deepcopy(defaults)
    for key, value in (config or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """Load and parse YAML configuration files."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the ConfigLoader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = config_path
        self.config: Dict[str, Any] = {}

    def load(self, config_path: Optional[str] = None) -> Dict[str, Any]:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Dictionary containing the parsed configuration, defaults applied

        Raises:
            ValueError: If no path was given or the file is not a mapping
            FileNotFoundError: If the configuration file doesn't exist
            yaml.YAMLError: If the YAML is malformed
        """
        path = config_path or self.config_path

        if not path:
            raise ValueError("No configuration path provided")

        config_file = Path(path)

        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Error parsing YAML configuration: {e}")

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")

        self.config = merge_defaults(raw)
        return self.config

    def load_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Use an in-memory configuration (e.g. built from CLI flags)."""
        self.config = merge_defaults(data)
        return self.config

    def apply_overrides(self, **overrides: Any) -> Dict[str, Any]:
        """
        Override configuration values. ``None`` values are ignored.

        Keys use dot notation, e.g. ``apply_overrides(**{'ade.name': 'vm1'})``.
        """
        for key, value in overrides.items():
            if value is None:
                continue
            target = self.config
            parts = key.split('.')
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = value
        return self.config

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by key.

        Args:
            key: Configuration key (supports dot notation, e.g., 'vm.size')
            default: Default value if key doesn't exist

        Returns:
            Configuration value or default
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def is_flow_enabled(self, flow: str) -> bool:
        """
        Check if an encryption flow is enabled.

        Args:
            flow: 'ade' or 'sse'
        """
        return bool(self.config.get(flow, {}).get('enabled', True))

    def get_resource_groups(self) -> Dict[str, str]:
        """Resource group name per enabled flow."""
        groups = {}
        for flow in ('ade', 'sse'):
            if self.is_flow_enabled(flow):
                groups[flow] = f"rg-{self.config.get(flow, {}).get('name', DEFAULTS[flow]['name'])}"
        return groups

    def get_tags(self) -> Dict[str, str]:
        """Get tags configuration section."""
        return self.config.get('tags', {})

    def to_dict(self) -> Dict[str, Any]:
        """
        Get the full configuration as a dictionary.

        Returns:
            Complete configuration dictionary
        """
        return self.config.copy()
