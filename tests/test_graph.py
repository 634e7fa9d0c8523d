import pytest

from vmencrypt.graph import (
    Format, GraphError, ModuleNode, OutputRef, Parameter, ParamRef, ResourceGraph, select,
)
from vmencrypt.modules import KEY_VAULT, RESOURCE_GROUP, USER_ASSIGNED_IDENTITY


def _graph():
    graph = ResourceGraph()
    graph.add_parameter(Parameter('location', required=True))
    graph.add_parameter(Parameter('name', default='demo'))
    return graph


def _vault(name, **extra):
    params = {'name': Format('kv-{0}', ParamRef('name')), 'keys': [{'name': 'k1'}]}
    params.update(extra)
    return ModuleNode(name, KEY_VAULT, params, resource_group=Format('rg-{0}', ParamRef('name')))


def test_topological_order_follows_references():
    graph = _graph()
    # Added out of order on purpose
    graph.add_node(ModuleNode('identity', USER_ASSIGNED_IDENTITY,
                              {'name': 'id-1', 'tag': OutputRef('rg', 'name')}))
    graph.add_node(ModuleNode('rg', RESOURCE_GROUP,
                              {'name': Format('rg-{0}', ParamRef('name')), 'location': ParamRef('location')}))

    assert graph.topological_order() == ['rg', 'identity']
    assert graph.edges() == [('rg', 'identity')]


def test_independent_nodes_keep_insertion_order():
    graph = _graph()
    graph.add_node(ModuleNode('b', RESOURCE_GROUP, {'name': 'rg-b'}))
    graph.add_node(ModuleNode('a', RESOURCE_GROUP, {'name': 'rg-a'}))

    assert graph.topological_order() == ['b', 'a']


def test_explicit_depends_on_is_an_edge():
    graph = _graph()
    graph.add_node(ModuleNode('rg', RESOURCE_GROUP, {'name': 'rg-x'}))
    graph.add_node(_vault('kv'))
    graph.nodes['kv'].depends_on.append('rg')

    assert graph.dependencies('kv') == ['rg']


def test_cycle_is_rejected():
    graph = _graph()
    graph.add_node(_vault('kv1', tag=OutputRef('kv2', 'uri')))
    graph.add_node(_vault('kv2', tag=OutputRef('kv1', 'uri')))

    with pytest.raises(GraphError, match="Circular dependency"):
        graph.topological_order()


def test_reference_to_unknown_node_is_rejected():
    graph = _graph()
    graph.add_node(_vault('kv', tag=OutputRef('missing', 'resourceId')))

    with pytest.raises(GraphError, match="non-existent node 'missing'"):
        graph.topological_order()


def test_duplicate_node_is_rejected():
    graph = _graph()
    graph.add_node(ModuleNode('rg', RESOURCE_GROUP, {'name': 'rg-x'}))

    with pytest.raises(GraphError):
        graph.add_node(ModuleNode('rg', RESOURCE_GROUP, {'name': 'rg-y'}))


def test_render_requires_required_parameters():
    graph = _graph()
    graph.add_node(ModuleNode('rg', RESOURCE_GROUP, {'name': 'rg-x', 'location': ParamRef('location')}))

    with pytest.raises(GraphError, match="Required parameter 'location'"):
        graph.render({})


def test_render_rejects_unknown_parameters():
    graph = _graph()

    with pytest.raises(GraphError, match="Unknown parameter"):
        graph.render({'location': 'eastus', 'colour': 'blue'})


def test_render_resolves_parameters_formats_and_outputs():
    graph = _graph()
    graph.add_node(ModuleNode('rg', RESOURCE_GROUP,
                              {'name': Format('rg-{0}', ParamRef('name')), 'location': ParamRef('location')}))
    graph.add_node(_vault('kv', owner=OutputRef('rg', 'resourceId')))

    plan = graph.render({'location': 'westus'}, subscription_id='sub-1')

    assert plan.order == ['rg', 'kv']
    assert plan['rg'].params == {'name': 'rg-demo', 'location': 'westus'}
    assert plan['kv'].resource_group == 'rg-demo'
    assert plan['kv'].params['owner'] == '/subscriptions/sub-1/resourceGroups/rg-demo'
    assert plan['kv'].outputs['resourceId'] == (
        '/subscriptions/sub-1/resourceGroups/rg-demo/providers/Microsoft.KeyVault/vaults/kv-demo'
    )
    assert plan['kv'].outputs['uri'] == 'https://kv-demo.vault.azure.net/'


def test_deferred_outputs_flow_through_references():
    graph = _graph()
    graph.add_node(ModuleNode('id', USER_ASSIGNED_IDENTITY, {'name': 'uami-x'}, resource_group='rg-x'))
    graph.add_node(_vault('kv', principal=OutputRef('id', 'principalId'),
                          key=OutputRef('kv0', 'keys', (0, 'uriWithVersion'))))
    graph.add_node(_vault('kv0'))

    plan = graph.render({'location': 'westus'})

    assert plan['kv'].params['principal'] == '<id.principalId>'
    assert plan['kv'].params['key'] == '<kv0.keys[0].uriWithVersion>'


def test_unknown_output_is_rejected():
    graph = _graph()
    graph.add_node(ModuleNode('rg', RESOURCE_GROUP, {'name': 'rg-x'}))
    graph.add_node(_vault('kv', tag=OutputRef('rg', 'principalId')))

    with pytest.raises(GraphError, match="has no output 'principalId'"):
        graph.render({'location': 'westus'})


def test_select_extends_deferred_tokens():
    assert select('<kv.keys>', (0, 'uri')) == '<kv.keys[0].uri>'
    assert select([{'uri': 'a'}], (0, 'uri')) == 'a'
    with pytest.raises(GraphError):
        select([], (0,))


def test_plan_to_dict_masks_password():
    graph = _graph()
    graph.add_parameter(Parameter('adminPassword', secure=True, generated_default='newGuid()'))
    graph.add_node(ModuleNode('rg', RESOURCE_GROUP, {'name': 'rg-x', 'adminPassword': ParamRef('adminPassword')}))

    data = graph.render({'location': 'westus', 'adminPassword': 'S3cret!Passw0rd'}).to_dict()

    assert data['inputs']['adminPassword'] == '<secure>'
    assert data['resources'][0]['params']['adminPassword'] == '<secure>'
    assert data['resources'][0]['module'] == 'br/public:avm/res/resources/resource-group:0.4.1'
