"""
vmencrypt - Azure VM disk-encryption deployment builder

Wires resource modules into two disk-encryption flows (Azure Disk Encryption
and Server-Side Encryption with a customer managed key), renders them as ARM
or Bicep templates, checks the wiring and hands the result to Azure.
"""

__version__ = "1.0.0"
__license__ = "GPL-3.0"

from .config_loader import ConfigLoader
from .validator import ConfigValidator
from .graph import ResourceGraph, GraphError
from .flows import build_graph
from .template_builder import TemplateBuilder
from .bicep import BicepWriter
from .checks import check_plan
from .orchestrator import Orchestrator

__all__ = [
    "ConfigLoader",
    "ConfigValidator",
    "ResourceGraph",
    "GraphError",
    "build_graph",
    "TemplateBuilder",
    "BicepWriter",
    "check_plan",
    "Orchestrator",
]
