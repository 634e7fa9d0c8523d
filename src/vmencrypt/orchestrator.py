"""
Orchestrator Module

Hands the generated template to the Azure deployment engine through the
Azure CLI. Dependency ordering, retries and reconciliation belong to the
engine; this module only submits, previews, inspects and tears down.
"""

from typing import Dict, Any, List, Optional
import json
import logging
import os
import subprocess
import tempfile
from pathlib import Path

from .config_loader import DEFAULTS
from .flows import graph_inputs

logger = logging.getLogger(__name__)

DEPLOYMENT_TIMEOUT = 3600
COMMAND_TIMEOUT = 300


class Orchestrator:
    """Orchestrate Azure deployments."""

    def __init__(self, config: Dict[str, Any], template: Dict[str, Any]):
        """
        Initialize the Orchestrator.

        Args:
            config: Parsed configuration dictionary
            template: Generated ARM template
        """
        self.config = config
        self.template = template
        self.subscription_id: Optional[str] = config.get('subscription_id')
        self.deployment_name = config.get('deployment', {}).get('name', DEFAULTS['deployment']['name'])
        self.location = config.get('location')

    def set_subscription(self, subscription_id: str):
        """Set the Azure subscription ID."""
        self.subscription_id = subscription_id

    @property
    def resource_groups(self) -> List[str]:
        """Resource groups created by the enabled flows."""
        groups = []
        for flow in ('ade', 'sse'):
            section = self.config.get(flow, {})
            if section.get('enabled', True):
                groups.append(f"rg-{section.get('name', DEFAULTS[flow]['name'])}")
        return groups

    def deploy(self, verbose: bool = False) -> bool:
        """
        Deploy both encryption flows at subscription scope.

        Args:
            verbose: Enable verbose output

        Returns:
            True if deployment succeeded, False otherwise
        """
        return self._submit('create', verbose=verbose)

    def what_if(self) -> bool:
        """
        Preview the changes the deployment would make.

        Returns:
            True if the preview ran successfully, False otherwise
        """
        return self._submit('what-if')

    def _submit(self, action: str, verbose: bool = False) -> bool:
        if not self._check_azure_cli():
            print("❌ Azure CLI is not installed or not in PATH")
            print("   Install from: https://docs.microsoft.com/en-us/cli/azure/install-azure-cli")
            return False

        if self.subscription_id:
            print(f"Setting subscription: {self.subscription_id}")
            result = self._run_az_command(['account', 'set', '--subscription', self.subscription_id])
            if result is None or result.returncode != 0:
                return False

        # mkstemp files are created 0600 under unique names
        template_fd, template_name = tempfile.mkstemp(prefix=f"{self.deployment_name}-", suffix=".json")
        params_fd, params_name = tempfile.mkstemp(prefix=f"{self.deployment_name}-params-", suffix=".json")
        template_path = Path(template_name)
        params_path = Path(params_name)

        try:
            with os.fdopen(template_fd, 'w', encoding='utf-8') as f:
                json.dump(self.template, f, indent=2)
            with os.fdopen(params_fd, 'w', encoding='utf-8') as f:
                json.dump(self._build_parameters(), f, indent=2)

            print(f"Starting deployment {action}: {self.deployment_name}")
            cmd = [
                'deployment', 'sub', action,
                '--name', self.deployment_name,
                '--location', self.location,
                '--template-file', str(template_path),
                '--parameters', f"@{params_path}"
            ]
            if verbose:
                cmd.append('--verbose')

            result = self._run_az_command(cmd, timeout=DEPLOYMENT_TIMEOUT)
            return result is not None and result.returncode == 0
        finally:
            for path in (template_path, params_path):
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass

    def destroy(self) -> bool:
        """
        Delete the resource groups of every enabled flow.

        Returns:
            True if every deletion was accepted, False otherwise
        """
        success = True
        for group in self.resource_groups:
            print(f"Deleting resource group: {group}")
            result = self._run_az_command([
                'group', 'delete',
                '--name', group,
                '--yes',
                '--no-wait'
            ])
            if result is None or result.returncode != 0:
                logger.error("Deleting resource group %s failed", group)
                success = False
        return success

    def get_deployment_status(self) -> Optional[Dict[str, Any]]:
        """
        Get the status of the deployment.

        Returns:
            Deployment status dictionary or None
        """
        result = self._run_az_command([
            'deployment', 'sub', 'show',
            '--name', self.deployment_name,
            '--output', 'json'
        ], capture_output=True)

        if result is None or result.returncode != 0:
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            logger.error("Could not parse deployment status: %s", e)
            return None

    def print_summary(self):
        """Print what each flow provisions."""
        print("\n" + "="*60)
        print("DEPLOYMENT SUMMARY")
        print("="*60)

        print(f"\nDeployment: {self.deployment_name}")
        print(f"Location: {self.location}")

        ade = self.config.get('ade', {})
        if ade.get('enabled', True):
            name = ade.get('name', DEFAULTS['ade']['name'])
            mode = "customer managed key" if ade.get('use_cmk', True) else "platform managed key"
            print(f"\nAzure Disk Encryption ({mode}):")
            print(f"  Resource Group: rg-{name}")
            print(f"  Key Vault: kv-{name}")
            print(f"  VM: {name} (encryption at host disabled)")

        sse = self.config.get('sse', {})
        if sse.get('enabled', True):
            name = sse.get('name', DEFAULTS['sse']['name'])
            print("\nServer-Side Encryption (customer managed key):")
            print(f"  Resource Group: rg-{name}")
            print(f"  Managed Identity: uami-{name}")
            print(f"  Key Vault: kv-{name}")
            print(f"  Disk Encryption Set: des-{name}")
            print(f"  VM: {name} (encryption at host enabled)")

        print(f"\nAdmin Username: {self.config.get('admin_username', DEFAULTS['admin_username'])}")
        if self.config.get('admin_password'):
            print("Admin Password: <configured>")
        else:
            print("Admin Password: <generated at deployment>")

        print("\n" + "="*60)

    def _az_executable(self) -> str:
        return 'az.cmd' if os.name == 'nt' else 'az'

    def _check_azure_cli(self) -> bool:
        """Check if Azure CLI is installed."""
        try:
            result = subprocess.run(
                [self._az_executable(), '--version'],
                capture_output=True,
                text=True,
                timeout=30,
                shell=(os.name == 'nt')
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            logger.debug("Azure CLI check failed: %s", e)
            return False
        return result.returncode == 0

    def _run_az_command(self, args: list, capture_output: bool = False,
                        timeout: int = COMMAND_TIMEOUT) -> Optional[subprocess.CompletedProcess]:
        """
        Run an Azure CLI command.

        Args:
            args: Command arguments
            capture_output: Whether to capture output
            timeout: Seconds before the command is abandoned

        Returns:
            CompletedProcess instance, or None if the command could not run
        """
        cmd = [self._az_executable()] + args
        logger.debug("Running: %s", ' '.join(cmd))
        try:
            return subprocess.run(
                cmd,
                capture_output=capture_output,
                text=True,
                timeout=timeout,
                shell=(os.name == 'nt')
            )
        except subprocess.TimeoutExpired:
            logger.error("Azure CLI command timed out after %ss: %s", timeout, ' '.join(args[:3]))
        except OSError as e:
            logger.error("Azure CLI command failed to start: %s", e)
        return None

    def _build_parameters(self) -> Dict[str, Any]:
        """
        Build ARM template parameters from configuration.

        Returns:
            Parameters dictionary
        """
        values = graph_inputs(self.config)
        declared = self.template.get('parameters', {})

        return {
            "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#",
            "contentVersion": "1.0.0.0",
            "parameters": {
                name: {"value": value}
                for name, value in values.items()
                # Unset password falls back to the template's generated default.
                if name in declared
            }
        }
