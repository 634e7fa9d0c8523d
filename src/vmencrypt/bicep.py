"""
Bicep Writer Module

Renders the resource graph as a Bicep file that calls the registry modules
directly. Output references become ``<module>.outputs.<name>`` accesses, which
Bicep turns into implicit dependencies; only dependencies not already implied
are written as ``dependsOn``.
"""

import re
import string
from typing import Any, List

from .graph import Format, ModuleNode, OutputRef, ParamRef, ResourceGraph

INDENT = "  "
IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("'", "\\'").replace("${", "\\${")


def _key(name: str) -> str:
    return name if IDENTIFIER.match(name) else f"'{_escape(name)}'"


class BicepWriter:
    """Render a ResourceGraph as Bicep source."""

    def __init__(self, graph: ResourceGraph):
        self.graph = graph

    def render(self) -> str:
        """Return the complete Bicep file."""
        blocks: List[str] = ["targetScope = 'subscription'"]
        blocks.extend(self._parameter(name) for name in self.graph.parameters)
        blocks.extend(self._module(self.graph.nodes[name]) for name in self.graph.topological_order())
        blocks.extend(
            f"output {name} {output_type} = {self.expression(value)}"
            for name, (output_type, value) in self.graph.outputs.items()
        )
        return "\n\n".join(blocks) + "\n"

    def save(self, output_path: str):
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(self.render())

    def _parameter(self, name: str) -> str:
        parameter = self.graph.parameters[name]
        lines = []
        if parameter.description:
            lines.append(f"@description('{_escape(parameter.description)}')")
        if parameter.secure:
            lines.append("@secure()")
        declaration = f"param {name} {parameter.type}"
        if parameter.default is not None:
            declaration += f" = {self.expression(parameter.default)}"
        elif parameter.generated_default:
            declaration += f" = {parameter.generated_default}"
        lines.append(declaration)
        return "\n".join(lines)

    def _module(self, node: ModuleNode) -> str:
        lines = [f"module {node.name} '{node.module.reference}' = {{"]
        lines.append(f"{INDENT}name: '{_escape(node.name)}'")
        if node.resource_group is not None:
            lines.append(f"{INDENT}scope: resourceGroup({self.expression(node.resource_group)})")
        lines.append(f"{INDENT}params: {self.expression(node.params, 1)}")

        implied = {ref.node for ref in self.graph.references(node.name)}
        explicit = [dep for dep in node.depends_on if dep not in implied]
        if explicit:
            lines.append(f"{INDENT}dependsOn: [")
            lines.extend(f"{INDENT * 2}{dep}" for dep in explicit)
            lines.append(f"{INDENT}]")
        lines.append("}")
        return "\n".join(lines)

    def expression(self, value: Any, depth: int = 0) -> str:
        """Render ``value`` as a Bicep expression at indentation ``depth``."""
        if isinstance(value, ParamRef):
            return value.name
        if isinstance(value, OutputRef):
            expr = f"{value.node}.outputs.{value.output}"
            for step in value.path:
                expr += f"[{step}]" if isinstance(step, int) else f".{step}"
            return expr
        if isinstance(value, Format):
            return self._interpolate(value)
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None:
            return "null"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            return f"'{_escape(value)}'"
        if isinstance(value, dict):
            if not value:
                return "{}"
            inner = INDENT * (depth + 1)
            items = [f"{inner}{_key(k)}: {self.expression(v, depth + 1)}" for k, v in value.items()]
            return "{\n" + "\n".join(items) + "\n" + INDENT * depth + "}"
        if isinstance(value, (list, tuple)):
            if not value:
                return "[]"
            inner = INDENT * (depth + 1)
            items = [f"{inner}{self.expression(v, depth + 1)}" for v in value]
            return "[\n" + "\n".join(items) + "\n" + INDENT * depth + "]"
        raise TypeError(f"Cannot render {value!r} as a Bicep expression")

    def _interpolate(self, value: Format) -> str:
        parts = []
        for literal, field, _spec, _conversion in string.Formatter().parse(value.template):
            parts.append(_escape(literal))
            if field is not None:
                parts.append("${" + self.expression(value.args[int(field)]) + "}")
        return "'" + "".join(parts) + "'"
