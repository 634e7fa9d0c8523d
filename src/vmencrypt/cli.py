"""
Command Line Interface Module

Provides CLI commands to validate, render, check and deploy the
disk-encryption flows.
"""

import sys
import argparse
import json
import logging
from typing import Any, Dict, Optional

import yaml

from .bicep import BicepWriter
from .checks import check_plan
from .config_loader import ConfigLoader
from .flows import build_graph, graph_inputs
from .modules import resolve_catalog
from .orchestrator import Orchestrator
from .template_builder import TemplateBuilder
from .validator import ConfigValidator


class VmEncryptCLI:
    """Command-line interface for vmencrypt."""

    def __init__(self):
        """Initialize the CLI."""
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create the argument parser."""
        parser = argparse.ArgumentParser(
            prog='vmencrypt',
            description='Deploy Azure VMs with Azure Disk Encryption or Server-Side Encryption (CMK)',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Validate configuration
  vmencrypt validate --config config/examples/both-flows.yaml

  # Generate the ARM template (or Bicep) without deploying
  vmencrypt generate --config config/examples/both-flows.yaml --output main.json
  vmencrypt generate --location eastus2 --subnet-id <id> --format bicep --output main.bicep

  # Show deployment order and check the wiring
  vmencrypt plan --config config/examples/both-flows.yaml
  vmencrypt check --config config/examples/both-flows.yaml

  # Deploy / preview / destroy
  vmencrypt deploy --config config/examples/both-flows.yaml
  vmencrypt deploy --config config/examples/both-flows.yaml --what-if
  vmencrypt destroy --config config/examples/both-flows.yaml
            """
        )

        # Options shared by every command that reads a configuration
        config_args = argparse.ArgumentParser(add_help=False)
        config_args.add_argument(
            '--config', '-c',
            help='Path to YAML configuration file'
        )
        config_args.add_argument('--location', help='Azure region (overrides config)')
        config_args.add_argument('--subnet-id', help='Subnet resource ID (overrides config)')
        config_args.add_argument('--ade-name', help='Naming root for ADE resources (default: vmAde)')
        config_args.add_argument('--sse-name', help='Naming root for SSE resources (default: vmSse)')
        config_args.add_argument('--key-name', help='Key vault key name (default: encryptKey)')
        config_args.add_argument(
            '--verbose', '-v',
            action='store_true',
            help='Enable verbose output'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        # Validate command
        subparsers.add_parser(
            'validate',
            parents=[config_args],
            help='Validate configuration'
        )

        # Generate command
        generate_parser = subparsers.add_parser(
            'generate',
            parents=[config_args],
            help='Generate the deployment template from configuration'
        )
        generate_parser.add_argument(
            '--output', '-o',
            required=True,
            help='Output path for the generated template'
        )
        generate_parser.add_argument(
            '--format',
            choices=['json', 'yaml', 'bicep'],
            default='json',
            help='Output format (default: json)'
        )

        # Plan command
        plan_parser = subparsers.add_parser(
            'plan',
            parents=[config_args],
            help='Show deployment order and resolved module inputs'
        )
        plan_parser.add_argument(
            '--format',
            choices=['text', 'json', 'yaml'],
            default='text',
            help='Output format (default: text)'
        )

        # Check command
        subparsers.add_parser(
            'check',
            parents=[config_args],
            help='Check encryption flags and cross-references of the rendered plan'
        )

        # Deploy command
        deploy_parser = subparsers.add_parser(
            'deploy',
            parents=[config_args],
            help='Deploy the encryption flows'
        )
        deploy_parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Validate and generate template without deploying'
        )
        deploy_parser.add_argument(
            '--what-if',
            action='store_true',
            help='Preview changes with the deployment engine'
        )
        deploy_parser.add_argument(
            '--subscription-id',
            help='Azure subscription ID'
        )

        # Status command
        subparsers.add_parser(
            'status',
            parents=[config_args],
            help='Show the state of the last deployment'
        )

        # Destroy command
        destroy_parser = subparsers.add_parser(
            'destroy',
            parents=[config_args],
            help='Delete the resource groups of the enabled flows'
        )
        destroy_parser.add_argument(
            '--force',
            action='store_true',
            help='Skip confirmation prompt'
        )

        # Modules command
        modules_parser = subparsers.add_parser(
            'modules',
            help='Inspect the resource modules'
        )
        modules_subparsers = modules_parser.add_subparsers(
            dest='modules_command',
            help='Module commands'
        )
        modules_subparsers.add_parser('list', help='List modules and pinned versions')

        # Version command
        subparsers.add_parser('version', help='Show version information')

        return parser

    def run(self, args: Optional[list] = None) -> int:
        """
        Run the CLI with the given arguments.

        Args:
            args: Command-line arguments (defaults to sys.argv[1:])
        """
        parsed_args = self.parser.parse_args(args)

        if not parsed_args.command:
            self.parser.print_help()
            return 1

        verbose = getattr(parsed_args, 'verbose', False)
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.WARNING,
            format='%(levelname)s %(name)s: %(message)s'
        )

        handlers = {
            'validate': self._validate,
            'generate': self._generate,
            'plan': self._plan,
            'check': self._check,
            'deploy': self._deploy,
            'status': self._status,
            'destroy': self._destroy,
            'modules': self._modules,
            'version': self._version,
        }

        try:
            return handlers[parsed_args.command](parsed_args)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            if verbose:
                import traceback
                traceback.print_exc()
            return 1

    def _load_config(self, args) -> Dict[str, Any]:
        """Load the config file (if any) and apply command-line overrides."""
        loader = ConfigLoader(args.config)
        if args.config:
            print(f"Loading configuration from {args.config}...")
            loader.load()
        else:
            loader.load_dict({})

        loader.apply_overrides(**{
            'location': args.location,
            'subnet_id': args.subnet_id,
            'ade.name': args.ade_name,
            'sse.name': args.sse_name,
            'key_name': args.key_name,
        })
        return loader.to_dict()

    def _load_valid_config(self, args) -> Optional[Dict[str, Any]]:
        """Load and validate; print findings. Returns None when invalid."""
        config = self._load_config(args)

        validator = ConfigValidator()
        is_valid, errors, warnings = validator.validate(config)

        if warnings:
            print("\nWarnings:")
            for warning in warnings:
                print(f"  ⚠️  {warning}")

        if not is_valid:
            print("\nValidation failed:")
            for error in errors:
                print(f"  ❌ {error}")
            return None

        return config

    def _validate(self, args) -> int:
        """Handle validate command."""
        print("Validating configuration...")
        config = self._load_valid_config(args)

        if config is None:
            print("\n❌ Configuration is invalid")
            return 1

        print("\n✅ Configuration is valid")
        return 0

    def _generate(self, args) -> int:
        """Handle generate command."""
        config = self._load_valid_config(args)
        if config is None:
            return 1

        if args.format == 'bicep':
            print("Generating Bicep template...")
            graph = build_graph(config, resolve_catalog(config.get('modules')))
            BicepWriter(graph).save(args.output)
        else:
            print("Generating ARM template...")
            builder = TemplateBuilder(config)
            template = builder.build()

            with open(args.output, 'w', encoding='utf-8') as f:
                if args.format == 'json':
                    json.dump(template, f, indent=2)
                else:
                    yaml.safe_dump(template, f, default_flow_style=False, sort_keys=False)

        print(f"\n✅ Template generated: {args.output}")
        return 0

    def _render_plan(self, config: Dict[str, Any]):
        graph = build_graph(config, resolve_catalog(config.get('modules')))
        return graph.render(graph_inputs(config), subscription_id=config.get('subscription_id'))

    def _plan(self, args) -> int:
        """Handle plan command."""
        config = self._load_valid_config(args)
        if config is None:
            return 1

        plan = self._render_plan(config)

        if args.format == 'json':
            print(json.dumps(plan.to_dict(), indent=2))
        elif args.format == 'yaml':
            print(yaml.safe_dump(plan.to_dict(), default_flow_style=False, sort_keys=False))
        else:
            print("\nDeployment order:")
            for index, resource in enumerate(plan.resources, start=1):
                scope = resource.resource_group or 'subscription'
                after = f" (after {', '.join(resource.depends_on)})" if resource.depends_on else ""
                print(f"  {index}. {resource.name} [{resource.module.reference}] in {scope}{after}")
                print(f"       name: {resource.outputs.get('name')}")
        return 0

    def _check(self, args) -> int:
        """Handle check command."""
        config = self._load_valid_config(args)
        if config is None:
            return 1

        plan = self._render_plan(config)
        use_cmk = config.get('ade', {}).get('use_cmk', True)
        failures = check_plan(plan, use_cmk=use_cmk)

        if failures:
            print("\nChecks failed:")
            for failure in failures:
                print(f"  ❌ {failure}")
            return 1

        print(f"\n✅ All checks passed for {len(plan.resources)} resources")
        return 0

    def _deploy(self, args) -> int:
        """Handle deploy command."""
        print("Validating configuration...")
        config = self._load_valid_config(args)
        if config is None:
            return 1
        print("✅ Configuration is valid")

        failures = check_plan(self._render_plan(config),
                              use_cmk=config.get('ade', {}).get('use_cmk', True))
        if failures:
            print("\nChecks failed:")
            for failure in failures:
                print(f"  ❌ {failure}")
            return 1

        print("\nGenerating ARM template...")
        builder = TemplateBuilder(config)
        template = builder.build()

        if args.dry_run:
            print("\n✅ Dry run completed successfully")
            print(f"Template would run {len(template['resources'])} module deployments")
            return 0

        orchestrator = Orchestrator(config, template)
        if args.subscription_id:
            orchestrator.set_subscription(args.subscription_id)

        if args.what_if:
            print("\nPreviewing changes...")
            return 0 if orchestrator.what_if() else 1

        print("\nDeploying to Azure...")
        success = orchestrator.deploy(verbose=args.verbose)

        if success:
            print("\n✅ Deployment completed successfully")
            orchestrator.print_summary()
            return 0
        else:
            print("\n❌ Deployment failed")
            return 1

    def _status(self, args) -> int:
        """Handle status command."""
        config = self._load_config(args)
        orchestrator = Orchestrator(config, {})
        status = orchestrator.get_deployment_status()

        if status is None:
            print(f"❌ No deployment named '{orchestrator.deployment_name}' found")
            return 1

        properties = status.get('properties', {})
        print(f"Deployment: {status.get('name', orchestrator.deployment_name)}")
        print(f"State: {properties.get('provisioningState', 'Unknown')}")
        print(f"Timestamp: {properties.get('timestamp', 'N/A')}")
        for name, output in (properties.get('outputs') or {}).items():
            print(f"  {name}: {output.get('value')}")
        return 0

    def _destroy(self, args) -> int:
        """Handle destroy command."""
        config = self._load_config(args)
        orchestrator = Orchestrator(config, {})
        groups = orchestrator.resource_groups

        if not args.force:
            response = input(
                f"\n⚠️  This will delete resource group(s) {', '.join(groups)} "
                f"and all resources within them.\n"
                f"Are you sure? (yes/no): "
            )
            if response.lower() != 'yes':
                print("Aborted.")
                return 0

        success = orchestrator.destroy()

        if success:
            print("\n✅ Resource group deletion started")
            return 0
        else:
            print("\n❌ Destroy operation failed")
            return 1

    def _modules(self, args) -> int:
        """Handle modules command."""
        if args.modules_command == 'list':
            catalog = resolve_catalog()
            print("Resource Modules:")
            for spec in catalog.values():
                print(f"\n  {spec.key}")
                print(f"    {spec.reference}")
                print(f"    {spec.description}")
                print(f"    outputs: {', '.join(spec.outputs)}")
            return 0

        print("Usage: vmencrypt modules list", file=sys.stderr)
        return 1

    def _version(self, args) -> int:
        """Handle version command."""
        from . import __version__
        print(f"vmencrypt version {__version__}")
        return 0


def main():
    """Main entry point for the CLI."""
    cli = VmEncryptCLI()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
