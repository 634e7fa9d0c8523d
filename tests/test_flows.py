import pytest

from vmencrypt.checks import check_plan
from vmencrypt.config_loader import merge_defaults
from vmencrypt.flows import (
    ADE_KEY_VAULT, ADE_RESOURCE_GROUP, ADE_VIRTUAL_MACHINE, CRYPTO_SERVICE_ENCRYPTION_USER,
    SSE_DISK_ENCRYPTION_SET, SSE_KEY_VAULT, SSE_MANAGED_IDENTITY, SSE_RESOURCE_GROUP,
    SSE_VIRTUAL_MACHINE, build_graph, graph_inputs,
)

from conftest import SUBNET_ID


def _plan(**overrides):
    config = merge_defaults({'location': 'eastus2', 'subnet_id': SUBNET_ID, **overrides})
    return build_graph(config).render(graph_inputs(config))


def test_default_names(plan):
    assert plan[ADE_RESOURCE_GROUP].outputs['name'] == 'rg-vmAde'
    assert plan[SSE_RESOURCE_GROUP].outputs['name'] == 'rg-vmSse'
    assert plan[ADE_KEY_VAULT].outputs['name'] == 'kv-vmAde'
    assert plan[SSE_KEY_VAULT].outputs['name'] == 'kv-vmSse'
    assert plan[SSE_MANAGED_IDENTITY].outputs['name'] == 'uami-vmSse'
    assert plan[SSE_DISK_ENCRYPTION_SET].outputs['name'] == 'des-vmSse'
    assert plan[ADE_VIRTUAL_MACHINE].params['name'] == 'vmAde'
    assert plan[SSE_VIRTUAL_MACHINE].params['name'] == 'vmSse'


def test_every_flow_resource_is_scoped_to_its_group(plan):
    for resource in plan.resources:
        if resource.name in (ADE_RESOURCE_GROUP, SSE_RESOURCE_GROUP):
            assert resource.resource_group is None
        elif resource.name.startswith('ade'):
            assert resource.resource_group == 'rg-vmAde'
        else:
            assert resource.resource_group == 'rg-vmSse'


def test_sse_chain_is_ordered_by_references(plan):
    order = plan.order
    assert order.index(SSE_RESOURCE_GROUP) < order.index(SSE_MANAGED_IDENTITY)
    assert order.index(SSE_MANAGED_IDENTITY) < order.index(SSE_KEY_VAULT)
    assert order.index(SSE_KEY_VAULT) < order.index(SSE_DISK_ENCRYPTION_SET)
    assert order.index(SSE_DISK_ENCRYPTION_SET) < order.index(SSE_VIRTUAL_MACHINE)
    assert order.index(ADE_KEY_VAULT) < order.index(ADE_VIRTUAL_MACHINE)


def test_flows_do_not_reference_each_other(graph):
    for upstream, downstream in graph.edges():
        assert upstream[:3] == downstream[:3]


def test_ade_vault_and_vm_flags(plan):
    vault = plan[ADE_KEY_VAULT].params
    assert vault['enablePurgeProtection'] is False
    assert vault['enableSoftDelete'] is False
    assert vault['enableVaultForDiskEncryption'] is True
    assert vault['keys'] == [{'name': 'encryptKey', 'kty': 'RSA'}]
    assert plan[ADE_VIRTUAL_MACHINE].params['encryptionAtHost'] is False


def test_sse_vault_and_vm_flags(plan):
    vault = plan[SSE_KEY_VAULT].params
    assert vault['enablePurgeProtection'] is True
    assert vault['enableSoftDelete'] is True
    assert vault['keys'] == [{'name': 'encryptKey', 'kty': 'RSA'}]
    assert plan[SSE_VIRTUAL_MACHINE].params['encryptionAtHost'] is True


def test_ade_extension_settings(plan):
    vault = plan[ADE_KEY_VAULT].outputs
    extension = plan[ADE_VIRTUAL_MACHINE].params['extensionAzureDiskEncryptionConfig']

    assert extension['enabled'] is True
    assert extension['settings'] == {
        'EncryptionOperation': 'EnableEncryption',
        'KeyEncryptionAlgorithm': 'RSA-OAEP',
        'KeyEncryptionKeyURL': '<adeKeyVault.keys[0].uriWithVersion>',
        'KekVaultResourceId': vault['resourceId'],
        'KeyVaultResourceId': vault['resourceId'],
        'KeyVaultURL': 'https://kv-vmAde.vault.azure.net/',
        'ResizeOSDisk': False,
        'VolumeType': 'All',
    }


def test_ade_without_cmk_drops_key_encryption_key():
    plan = _plan(ade={'use_cmk': False})
    settings = plan[ADE_VIRTUAL_MACHINE].params['extensionAzureDiskEncryptionConfig']['settings']

    assert 'KeyEncryptionKeyURL' not in settings
    assert 'KekVaultResourceId' not in settings
    assert settings['KeyVaultResourceId'] == plan[ADE_KEY_VAULT].outputs['resourceId']


def test_vm_disks_are_premium(plan):
    for name in (ADE_VIRTUAL_MACHINE, SSE_VIRTUAL_MACHINE):
        vm = plan[name].params
        assert vm['osType'] == 'Windows'
        assert vm['osDisk']['managedDisk']['storageAccountType'] == 'Premium_LRS'
        assert len(vm['dataDisks']) == 1
        assert vm['dataDisks'][0]['managedDisk']['storageAccountType'] == 'Premium_LRS'
        assert vm['nicConfigurations'][0]['ipConfigurations'][0]['subnetResourceId'] == SUBNET_ID


def test_sse_disks_reference_disk_encryption_set(plan):
    des_id = plan[SSE_DISK_ENCRYPTION_SET].outputs['resourceId']
    vm = plan[SSE_VIRTUAL_MACHINE].params

    assert des_id.endswith('/resourceGroups/rg-vmSse/providers/Microsoft.Compute/diskEncryptionSets/des-vmSse')
    assert vm['osDisk']['managedDisk']['diskEncryptionSetResourceId'] == des_id
    assert vm['dataDisks'][0]['managedDisk']['diskEncryptionSetResourceId'] == des_id
    assert 'diskEncryptionSetResourceId' not in plan[ADE_VIRTUAL_MACHINE].params['osDisk']['managedDisk']


def test_sse_identity_wiring(plan):
    identity = plan[SSE_MANAGED_IDENTITY].outputs
    vault = plan[SSE_KEY_VAULT]
    des = plan[SSE_DISK_ENCRYPTION_SET].params

    assert vault.params['roleAssignments'] == [{
        'principalId': identity['principalId'],
        'roleDefinitionIdOrName': CRYPTO_SERVICE_ENCRYPTION_USER,
        'principalType': 'ServicePrincipal',
    }]
    assert des['managedIdentities']['userAssignedResourceIds'] == [identity['resourceId']]
    assert des['keyVaultResourceId'] == vault.outputs['resourceId']
    assert des['keyName'] == 'encryptKey'
    assert des['encryptionType'] == 'EncryptionAtRestWithCustomerKey'


def test_disabled_flow_is_left_out():
    plan = _plan(ade={'enabled': False})

    assert ADE_RESOURCE_GROUP not in plan
    assert ADE_VIRTUAL_MACHINE not in plan
    assert SSE_VIRTUAL_MACHINE in plan


def test_tags_and_vm_settings_are_applied():
    plan = _plan(tags={'env': 'test'}, vm={'size': 'Standard_D4s_v5', 'data_disk_size_gb': 256},
                 key_name='diskKey')

    assert plan[SSE_KEY_VAULT].params['tags'] == {'env': 'test'}
    assert plan[ADE_RESOURCE_GROUP].params['tags'] == {'env': 'test'}
    assert plan[SSE_VIRTUAL_MACHINE].params['vmSize'] == 'Standard_D4s_v5'
    assert plan[SSE_VIRTUAL_MACHINE].params['dataDisks'][0]['diskSizeGB'] == 256
    assert plan[SSE_DISK_ENCRYPTION_SET].params['keyName'] == 'diskKey'
    assert plan[ADE_KEY_VAULT].params['keys'][0]['name'] == 'diskKey'


def test_generated_password_stays_deferred(plan):
    assert plan[ADE_VIRTUAL_MACHINE].params['adminPassword'] == '<parameters.adminPassword>'


@pytest.mark.parametrize('ade_name,sse_name,location', [
    ('vmAde', 'vmSse', 'eastus2'),
    ('web01', 'db01', 'westeurope'),
    ('ade-test', 'sse-test', 'australiaeast'),
])
def test_checks_pass_for_valid_inputs(ade_name, sse_name, location):
    plan = _plan(ade={'name': ade_name}, sse={'name': sse_name}, location=location)

    assert check_plan(plan) == []
    assert plan[ADE_RESOURCE_GROUP].params['location'] == location
