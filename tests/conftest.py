import pytest

from vmencrypt.config_loader import merge_defaults
from vmencrypt.flows import build_graph, graph_inputs

SUBNET_ID = (
    "/subscriptions/11111111-1111-1111-1111-111111111111/resourceGroups/rg-network"
    "/providers/Microsoft.Network/virtualNetworks/vnet-lab/subnets/default"
)


@pytest.fixture
def raw_config():
    return {
        'location': 'eastus2',
        'subnet_id': SUBNET_ID,
    }


@pytest.fixture
def config(raw_config):
    return merge_defaults(raw_config)


@pytest.fixture
def graph(config):
    return build_graph(config)


@pytest.fixture
def plan(graph, config):
    return graph.render(graph_inputs(config))
