"""
Resource Graph Module

Models a deployment as a graph of module nodes. Each node declares the
outputs it produces; every parameter that references another node's output
is an edge. Deployment order is the topological order of those edges.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .modules import ModuleSpec, deferred

logger = logging.getLogger(__name__)


class GraphError(ValueError):
    """Raised for malformed graphs: unknown references, cycles, missing inputs."""


@dataclass(frozen=True)
class ParamRef:
    """Reference to a top-level deployment parameter."""
    name: str


@dataclass(frozen=True)
class OutputRef:
    """Reference to an output of an upstream node.

    ``path`` selects into structured outputs, e.g. ``(0, 'uriWithVersion')``
    on the key vault's ``keys`` output.
    """
    node: str
    output: str
    path: Tuple[Union[int, str], ...] = ()


@dataclass(frozen=True)
class Format:
    """String interpolation: ``Format('rg-{0}', ParamRef('adeName'))``."""
    template: str
    args: Tuple[Any, ...] = ()

    def __init__(self, template: str, *args: Any):
        object.__setattr__(self, 'template', template)
        object.__setattr__(self, 'args', tuple(args))


Expression = Union[ParamRef, OutputRef, Format]


@dataclass
class Parameter:
    """Top-level deployment parameter."""
    name: str
    type: str = 'string'
    default: Any = None
    required: bool = False
    secure: bool = False
    description: str = ''
    # Evaluated by the deployment engine (e.g. newGuid()); cannot be predicted.
    generated_default: Optional[str] = None


@dataclass
class ModuleNode:
    """A call to an externally maintained module."""
    name: str
    module: ModuleSpec
    params: Dict[str, Any]
    resource_group: Any = None
    depends_on: List[str] = field(default_factory=list)


@dataclass
class PlannedResource:
    """A node with every reference resolved to a concrete or deferred value."""
    name: str
    module: ModuleSpec
    resource_group: Optional[str]
    params: Dict[str, Any]
    outputs: Dict[str, Any]
    depends_on: List[str]


@dataclass
class Plan:
    """Rendered graph: resources in deployment order."""
    inputs: Dict[str, Any]
    resources: List[PlannedResource]

    def get(self, name: str) -> Optional[PlannedResource]:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __getitem__(self, name: str) -> PlannedResource:
        resource = self.get(name)
        if resource is None:
            raise KeyError(name)
        return resource

    @property
    def order(self) -> List[str]:
        return [r.name for r in self.resources]

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data view of the plan (for JSON/YAML output)."""
        return {
            "inputs": {
                k: ('<secure>' if k == 'adminPassword' and v is not None else v)
                for k, v in self.inputs.items()
            },
            "resources": [
                {
                    "name": r.name,
                    "module": r.module.reference,
                    "resourceGroup": r.resource_group,
                    "dependsOn": r.depends_on,
                    "params": _mask_secrets(r.params),
                    "outputs": r.outputs,
                }
                for r in self.resources
            ],
        }


def _mask_secrets(params: Dict[str, Any]) -> Dict[str, Any]:
    masked = dict(params)
    if masked.get('adminPassword') is not None:
        masked['adminPassword'] = '<secure>'
    return masked


def iter_expressions(value: Any) -> Iterator[Expression]:
    """Yield every expression nested anywhere in ``value``."""
    if isinstance(value, (ParamRef, OutputRef)):
        yield value
    elif isinstance(value, Format):
        yield value
        for arg in value.args:
            yield from iter_expressions(arg)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_expressions(item)


def select(value: Any, path: Tuple[Union[int, str], ...]) -> Any:
    """Walk ``path`` into a structured output value."""
    for step in path:
        if isinstance(value, str) and value.startswith("<"):
            # Deferred structured output: extend the token instead.
            value = value[:-1] + (f"[{step}]" if isinstance(step, int) else f".{step}") + '>'
            continue
        try:
            value = value[step]
        except (KeyError, IndexError, TypeError):
            raise GraphError(f"Cannot select {step!r} from output value {value!r}")
    return value


class ResourceGraph:
    """Graph of module nodes wired through output references."""

    def __init__(self):
        self.parameters: Dict[str, Parameter] = {}
        self.nodes: Dict[str, ModuleNode] = {}
        self.outputs: Dict[str, Tuple[str, Any]] = {}

    def add_parameter(self, parameter: Parameter) -> Parameter:
        if parameter.name in self.parameters:
            raise GraphError(f"Duplicate parameter '{parameter.name}'")
        self.parameters[parameter.name] = parameter
        return parameter

    def add_node(self, node: ModuleNode) -> ModuleNode:
        if node.name in self.nodes:
            raise GraphError(f"Duplicate node '{node.name}'")
        self.nodes[node.name] = node
        logger.debug("Added node %s (%s)", node.name, node.module.reference)
        return node

    def add_output(self, name: str, output_type: str, value: Any):
        """Expose a value as a template-level output."""
        self.outputs[name] = (output_type, value)

    def references(self, name: str) -> List[OutputRef]:
        """Output references made by node ``name`` (params and scope)."""
        node = self.nodes[name]
        found = list(iter_expressions(node.params))
        found.extend(iter_expressions(node.resource_group))
        return [e for e in found if isinstance(e, OutputRef)]

    def dependencies(self, name: str) -> List[str]:
        """Nodes that must be deployed before ``name``, in insertion order."""
        if name not in self.nodes:
            raise GraphError(f"Unknown node '{name}'")
        wanted = set(self.nodes[name].depends_on)
        wanted.update(ref.node for ref in self.references(name))
        for dep in wanted:
            if dep not in self.nodes:
                raise GraphError(f"Node '{name}' references non-existent node '{dep}'")
        return [n for n in self.nodes if n in wanted]

    def edges(self) -> List[Tuple[str, str]]:
        """All (upstream, downstream) pairs."""
        return [(dep, name) for name in self.nodes for dep in self.dependencies(name)]

    def topological_order(self) -> List[str]:
        """Deployment order; ties keep insertion order."""
        order: List[str] = []
        visited = set()
        rec_stack = set()

        def visit(node):
            if node in visited:
                return
            if node in rec_stack:
                raise GraphError(f"Circular dependency detected at node '{node}'")
            rec_stack.add(node)
            for dep in self.dependencies(node):
                visit(dep)
            rec_stack.remove(node)
            visited.add(node)
            order.append(node)

        for name in self.nodes:
            visit(name)
        return order

    def parameter_values(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Merge ``inputs`` with declared defaults."""
        unknown = set(inputs) - set(self.parameters)
        if unknown:
            raise GraphError(f"Unknown parameter(s): {', '.join(sorted(unknown))}")

        values = {}
        for name, parameter in self.parameters.items():
            if inputs.get(name) is not None:
                values[name] = inputs[name]
            elif parameter.default is not None:
                values[name] = parameter.default
            elif parameter.generated_default is not None:
                values[name] = None
            elif parameter.required:
                raise GraphError(f"Required parameter '{name}' has no value")
            else:
                values[name] = None
        return values

    def render(self, inputs: Dict[str, Any], subscription_id: Optional[str] = None) -> Plan:
        """Resolve the graph for concrete inputs."""
        values = self.parameter_values(inputs)
        resolved_outputs: Dict[str, Dict[str, Any]] = {}
        resources = []

        for name in self.topological_order():
            node = self.nodes[name]
            resolver = _Resolver(values, resolved_outputs)
            params = resolver.resolve(node.params)
            resource_group = resolver.resolve(node.resource_group)
            outputs = node.module.predict_outputs(name, params, resource_group, subscription_id)
            resolved_outputs[name] = outputs
            resources.append(PlannedResource(
                name=name,
                module=node.module,
                resource_group=resource_group,
                params=params,
                outputs=outputs,
                depends_on=self.dependencies(name),
            ))

        return Plan(inputs=values, resources=resources)


class _Resolver:
    """Replace expressions with values for one node."""

    def __init__(self, values: Dict[str, Any], outputs: Dict[str, Dict[str, Any]]):
        self.values = values
        self.outputs = outputs

    def resolve(self, value: Any) -> Any:
        if isinstance(value, ParamRef):
            if value.name not in self.values:
                raise GraphError(f"Unknown parameter '{value.name}'")
            resolved = self.values[value.name]
            if resolved is None:
                return deferred('parameters', value.name)
            return resolved
        if isinstance(value, OutputRef):
            try:
                outputs = self.outputs[value.node]
            except KeyError:
                raise GraphError(f"Output of '{value.node}' requested before it was resolved")
            if value.output not in outputs:
                raise GraphError(f"Node '{value.node}' has no output '{value.output}'")
            return select(outputs[value.output], value.path)
        if isinstance(value, Format):
            return value.template.format(*[self.resolve(arg) for arg in value.args])
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve(v) for v in value]
        return value
