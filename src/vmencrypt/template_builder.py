"""
Template Builder Module

Builds a subscription-scope ARM template from the resource graph. Every
module node becomes a nested deployment linked to the module's published
template; output references become ``reference()`` expressions and graph
edges become ``dependsOn`` entries.
"""

from typing import Dict, Any, List, Optional
import json
import logging

from .flows import build_graph
from .graph import Format, ModuleNode, OutputRef, ParamRef, ResourceGraph
from .modules import resolve_catalog

logger = logging.getLogger(__name__)

DEPLOYMENT_API_VERSION = "2022-09-01"
TEMPLATE_SCHEMA = "https://schema.management.azure.com/schemas/2018-05-01/subscriptionDeploymentTemplate.json#"


def _quote(text: str) -> str:
    """ARM string literal."""
    return "'" + text.replace("'", "''") + "'"


class TemplateBuilder:
    """Build ARM templates from configuration."""

    def __init__(self, config: Dict[str, Any], graph: Optional[ResourceGraph] = None):
        """
        Initialize the TemplateBuilder.

        Args:
            config: Parsed configuration dictionary
            graph: Prebuilt resource graph (built from config when omitted)
        """
        self.config = config
        self.graph = graph or build_graph(config, resolve_catalog(config.get('modules')))
        self.template: Dict[str, Any] = {
            "$schema": TEMPLATE_SCHEMA,
            "contentVersion": "1.0.0.0",
            "parameters": {},
            "variables": {},
            "resources": [],
            "outputs": {}
        }

    def build(self) -> Dict[str, Any]:
        """
        Build the complete ARM template.

        Returns:
            Complete ARM template dictionary
        """
        self._add_parameters()

        # Nested deployments in dependency order
        for name in self.graph.topological_order():
            self.template["resources"].append(self._create_deployment(self.graph.nodes[name]))

        self._add_outputs()

        logger.debug("Built template with %d deployments", len(self.template["resources"]))
        return self.template

    def _add_parameters(self):
        """Add parameters to the template."""
        parameters = {}
        for name, parameter in self.graph.parameters.items():
            entry: Dict[str, Any] = {
                "type": "securestring" if parameter.secure else parameter.type,
            }
            if parameter.default is not None:
                entry["defaultValue"] = parameter.default
            elif parameter.generated_default:
                entry["defaultValue"] = f"[{parameter.generated_default}]"
            if parameter.description:
                entry["metadata"] = {"description": parameter.description}
            parameters[name] = entry
        self.template["parameters"] = parameters

    def _add_outputs(self):
        """Add outputs to the template."""
        self.template["outputs"] = {
            name: {
                "type": output_type,
                "value": self.value(value),
            }
            for name, (output_type, value) in self.graph.outputs.items()
        }

    def _create_deployment(self, node: ModuleNode) -> Dict[str, Any]:
        """Create the nested deployment resource for one module call."""
        deployment: Dict[str, Any] = {
            "type": "Microsoft.Resources/deployments",
            "apiVersion": DEPLOYMENT_API_VERSION,
            "name": node.name,
        }

        if node.resource_group is not None:
            deployment["resourceGroup"] = self.value(node.resource_group)
        else:
            deployment["location"] = "[parameters('location')]"

        deployment["properties"] = {
            "mode": "Incremental",
            "templateLink": {
                "uri": node.module.template_uri,
                "contentVersion": "1.0.0.0"
            },
            "parameters": {
                key: {"value": self.value(value)}
                for key, value in node.params.items()
            }
        }

        dependencies = self.graph.dependencies(node.name)
        if dependencies:
            deployment["dependsOn"] = [f"[{self._deployment_id(dep)}]" for dep in dependencies]

        return deployment

    def _deployment_id(self, name: str) -> str:
        """Resource ID expression of the nested deployment for node ``name``."""
        node = self.graph.nodes[name]
        if node.resource_group is None:
            return f"subscriptionResourceId('Microsoft.Resources/deployments', {_quote(name)})"
        return (
            "extensionResourceId(format('/subscriptions/{0}/resourceGroups/{1}', "
            f"subscription().subscriptionId, {self.expression(node.resource_group)}), "
            f"'Microsoft.Resources/deployments', {_quote(name)})"
        )

    def expression(self, value: Any) -> str:
        """Render ``value`` as an ARM expression body (no brackets)."""
        if isinstance(value, ParamRef):
            return f"parameters({_quote(value.name)})"
        if isinstance(value, OutputRef):
            expr = (
                f"reference({self._deployment_id(value.node)}, {_quote(DEPLOYMENT_API_VERSION)})"
                f".outputs.{value.output}.value"
            )
            for step in value.path:
                expr += f"[{step}]" if isinstance(step, int) else f".{step}"
            return expr
        if isinstance(value, Format):
            args = ", ".join(self.expression(arg) for arg in value.args)
            return f"format({_quote(value.template)}, {args})" if args else _quote(value.template)
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            return _quote(value)
        raise TypeError(f"Cannot render {value!r} as an ARM expression")

    def value(self, value: Any) -> Any:
        """Render ``value`` as a JSON template value."""
        if isinstance(value, (ParamRef, OutputRef, Format)):
            return f"[{self.expression(value)}]"
        if isinstance(value, dict):
            return {k: self.value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.value(v) for v in value]
        if isinstance(value, str) and value.startswith('['):
            # Literal leading bracket must be escaped
            return '[' + value
        return value

    def save_template(self, output_path: str):
        """
        Save the template to a file.

        Args:
            output_path: Path to save the template
        """
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(self.template, f, indent=2)

    def resource_names(self) -> List[str]:
        """Names of the nested deployments, in template order."""
        return [r["name"] for r in self.template["resources"]]
