"""
Configuration Validator Module

Validates YAML configuration against the schema and performs semantic validation.
"""

import re
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple
import yaml
from jsonschema import validate, ValidationError

from .modules import CATALOG

SCHEMA_FILE = Path(__file__).parent / "schemas" / "deployment-config.schema.yaml"

SUBNET_ID_PATTERN = re.compile(
    r"^/subscriptions/[^/]+/resourceGroups/[^/]+/providers/Microsoft\.Network/"
    r"virtualNetworks/[^/]+/subnets/[^/]+$",
    re.IGNORECASE,
)
KEY_VAULT_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]{1,22}[a-zA-Z0-9]$")
KEY_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]{1,127}$")
WINDOWS_COMPUTER_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]{1,15}$")

# Azure naming limits
MAX_WINDOWS_COMPUTER_NAME = 15
MAX_RESOURCE_GROUP_NAME = 90
MAX_IDENTITY_NAME = 128
MAX_DISK_ENCRYPTION_SET_NAME = 80


class ConfigValidator:
    """Validate configuration files against schema and naming rules."""

    def __init__(self, schema_path: Optional[str] = None):
        """
        Initialize the ConfigValidator.

        Args:
            schema_path: Path to the JSON schema file (YAML encoded)
        """
        self.schema_path = Path(schema_path) if schema_path else SCHEMA_FILE
        self.schema = self._load_schema()
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def _load_schema(self) -> Dict[str, Any]:
        """Load the JSON schema from file."""
        if not self.schema_path.exists():
            raise FileNotFoundError(f"Schema file not found: {self.schema_path}")

        with open(self.schema_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)

    def validate(self, config: Dict[str, Any]) -> Tuple[bool, List[str], List[str]]:
        """
        Validate configuration against schema and naming rules.

        Args:
            config: Configuration dictionary to validate

        Returns:
            Tuple of (is_valid, errors, warnings)
        """
        self.errors = []
        self.warnings = []

        # Schema validation
        try:
            validate(instance=config, schema=self.schema)
        except ValidationError as e:
            location = '.'.join(str(p) for p in e.absolute_path)
            prefix = f"{location}: " if location else ""
            self.errors.append(f"Schema validation error: {prefix}{e.message}")
            return False, self.errors, self.warnings

        # Semantic validation
        self._validate_subnet(config)
        self._validate_flows(config)
        self._validate_names(config)
        self._validate_key_name(config)
        self._validate_credentials(config)
        self._validate_modules(config)

        is_valid = len(self.errors) == 0
        return is_valid, self.errors, self.warnings

    def _validate_subnet(self, config: Dict[str, Any]):
        """Validate the subnet reference."""
        subnet_id = config.get('subnet_id', '')
        if not SUBNET_ID_PATTERN.match(subnet_id):
            self.errors.append(
                f"subnet_id '{subnet_id}' is not a subnet resource ID "
                f"(/subscriptions/<id>/resourceGroups/<rg>/providers/Microsoft.Network/"
                f"virtualNetworks/<vnet>/subnets/<subnet>)"
            )

    def _enabled_flows(self, config: Dict[str, Any]) -> List[str]:
        return [flow for flow in ('ade', 'sse') if config.get(flow, {}).get('enabled', True)]

    def _validate_flows(self, config: Dict[str, Any]):
        """Validate flow selection and naming collisions."""
        flows = self._enabled_flows(config)
        if not flows:
            self.errors.append("At least one of 'ade' or 'sse' must be enabled")
            return

        if len(flows) == 2:
            ade_name = config.get('ade', {}).get('name', 'vmAde')
            sse_name = config.get('sse', {}).get('name', 'vmSse')
            # Key vault names are global and case-insensitive.
            if ade_name.lower() == sse_name.lower():
                self.errors.append(
                    f"ADE and SSE flows use the same name '{ade_name}'; "
                    f"resource groups and key vaults would collide"
                )

        ade = config.get('ade', {})
        if 'ade' in flows and not ade.get('use_cmk', True):
            self.warnings.append(
                "ADE flow runs without a key encryption key (platform-managed key mode)"
            )

    def _validate_names(self, config: Dict[str, Any]):
        """Validate names generated from each flow's naming root."""
        for flow in self._enabled_flows(config):
            name = config.get(flow, {}).get('name', 'vmAde' if flow == 'ade' else 'vmSse')
            label = flow.upper()

            if not WINDOWS_COMPUTER_NAME_PATTERN.match(name):
                self.errors.append(
                    f"{label} VM name '{name}' must be 1-{MAX_WINDOWS_COMPUTER_NAME} "
                    f"alphanumeric or hyphen characters (Windows computer name)"
                )
            elif name.isdigit():
                self.errors.append(f"{label} VM name '{name}' cannot be entirely numeric")

            vault_name = f"kv-{name}"
            if not KEY_VAULT_NAME_PATTERN.match(vault_name) or '--' in vault_name:
                self.errors.append(
                    f"Key vault name '{vault_name}' must be 3-24 alphanumerics or hyphens, "
                    f"start with a letter, end with a letter or digit, no consecutive hyphens"
                )

            if len(f"rg-{name}") > MAX_RESOURCE_GROUP_NAME:
                self.errors.append(f"Resource group name 'rg-{name}' exceeds {MAX_RESOURCE_GROUP_NAME} characters")

            if flow == 'sse':
                if len(f"uami-{name}") > MAX_IDENTITY_NAME:
                    self.errors.append(f"Identity name 'uami-{name}' exceeds {MAX_IDENTITY_NAME} characters")
                if len(f"des-{name}") > MAX_DISK_ENCRYPTION_SET_NAME:
                    self.errors.append(
                        f"Disk encryption set name 'des-{name}' exceeds {MAX_DISK_ENCRYPTION_SET_NAME} characters"
                    )

    def _validate_key_name(self, config: Dict[str, Any]):
        """Validate the key vault key name."""
        key_name = config.get('key_name', 'encryptKey')
        if not KEY_NAME_PATTERN.match(key_name):
            self.errors.append(
                f"Key name '{key_name}' must be 1-127 alphanumeric or hyphen characters"
            )

    def _validate_credentials(self, config: Dict[str, Any]):
        """Validate administrator credentials."""
        username = config.get('admin_username', 'localAdminUser')
        reserved = {'administrator', 'admin', 'user', 'guest', 'root', 'test'}
        if username.lower() in reserved:
            self.errors.append(f"Admin username '{username}' is reserved on Windows VMs")

        password = config.get('admin_password')
        if password is None:
            self.warnings.append(
                "No admin_password set; a random password is generated at deployment "
                "and cannot be retrieved afterwards"
            )
            return

        self.warnings.append("admin_password is stored in plain text in the configuration")
        classes = [
            any(c.islower() for c in password),
            any(c.isupper() for c in password),
            any(c.isdigit() for c in password),
            any(not c.isalnum() for c in password),
        ]
        if sum(classes) < 3:
            self.errors.append(
                "admin_password must contain 3 of: lowercase, uppercase, digit, special character"
            )

    def _validate_modules(self, config: Dict[str, Any]):
        """Validate module version pins."""
        for key in config.get('modules', {}) or {}:
            if key not in CATALOG:
                self.errors.append(
                    f"Unknown module '{key}' in version pins. Known modules: {', '.join(CATALOG)}"
                )

    def get_errors(self) -> List[str]:
        """Get validation errors."""
        return self.errors

    def get_warnings(self) -> List[str]:
        """Get validation warnings."""
        return self.warnings
