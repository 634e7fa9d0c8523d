from vmencrypt.checks import (
    check_ade_flags, check_ade_key_vault_reference, check_naming, check_plan,
    check_sse_disk_references, check_sse_flags, check_sse_identity,
)
from vmencrypt.config_loader import merge_defaults
from vmencrypt.flows import (
    ADE_KEY_VAULT, ADE_VIRTUAL_MACHINE, SSE_DISK_ENCRYPTION_SET, SSE_KEY_VAULT,
    SSE_VIRTUAL_MACHINE, build_graph, graph_inputs,
)

from conftest import SUBNET_ID


def _checks(failures):
    return {failure.check for failure in failures}


def test_default_plan_passes(plan):
    assert check_plan(plan) == []


def test_ade_vault_with_purge_protection_fails(plan):
    plan[ADE_KEY_VAULT].params['enablePurgeProtection'] = True

    failures = check_ade_flags(plan)

    assert len(failures) == 1
    assert 'enablePurgeProtection' in failures[0].message


def test_ade_vm_with_encryption_at_host_fails(plan):
    plan[ADE_VIRTUAL_MACHINE].params['encryptionAtHost'] = True

    assert _checks(check_plan(plan)) == {'ade-flags'}


def test_sse_vault_without_soft_delete_fails(plan):
    plan[SSE_KEY_VAULT].params['enableSoftDelete'] = False
    plan[SSE_VIRTUAL_MACHINE].params['encryptionAtHost'] = False

    assert len(check_sse_flags(plan)) == 2


def test_ade_extension_pointing_elsewhere_fails(plan):
    settings = plan[ADE_VIRTUAL_MACHINE].params['extensionAzureDiskEncryptionConfig']['settings']
    settings['KeyVaultURL'] = 'https://kv-other.vault.azure.net/'
    settings['KeyEncryptionKeyURL'] = ''

    failures = check_ade_key_vault_reference(plan)

    assert len(failures) == 2
    assert any('KeyEncryptionKeyURL is empty' in f.message for f in failures)


def test_ade_key_url_from_other_vault_fails(plan):
    settings = plan[ADE_VIRTUAL_MACHINE].params['extensionAzureDiskEncryptionConfig']['settings']
    settings['KeyEncryptionKeyURL'] = plan[SSE_KEY_VAULT].outputs['keys'][0]['uriWithVersion']

    failures = check_plan(plan)

    assert _checks(failures) == {'ade-key-vault'}
    assert 'KeyEncryptionKeyURL is' in failures[0].message


def test_ade_without_cmk_does_not_require_key_url(plan):
    settings = plan[ADE_VIRTUAL_MACHINE].params['extensionAzureDiskEncryptionConfig']['settings']
    del settings['KeyEncryptionKeyURL']
    del settings['KekVaultResourceId']

    assert check_ade_key_vault_reference(plan, use_cmk=False) == []
    assert _checks(check_plan(plan, use_cmk=True)) == {'ade-key-vault'}


def test_sse_data_disk_without_encryption_set_fails(plan):
    plan[SSE_VIRTUAL_MACHINE].params['dataDisks'][0]['managedDisk'].pop('diskEncryptionSetResourceId')

    failures = check_sse_disk_references(plan)

    assert len(failures) == 1
    assert 'Data disk 0' in failures[0].message


def test_sse_role_assignment_for_other_principal_fails(plan):
    plan[SSE_KEY_VAULT].params['roleAssignments'][0]['principalId'] = 'someone-else'

    assert _checks(check_sse_identity(plan)) == {'sse-identity'}


def test_sse_missing_role_assignment_fails(plan):
    plan[SSE_KEY_VAULT].params['roleAssignments'] = []

    failures = check_sse_identity(plan)

    assert any('role assignment' in f.message for f in failures)


def test_disk_encryption_set_bound_to_other_identity_fails(plan):
    plan[SSE_DISK_ENCRYPTION_SET].params['managedIdentities']['userAssignedResourceIds'] = ['/other']

    assert len(check_sse_identity(plan)) == 1


def test_colliding_names_fail():
    config = merge_defaults({
        'location': 'eastus2', 'subnet_id': SUBNET_ID,
        'ade': {'name': 'shared'}, 'sse': {'name': 'shared'},
    })
    plan = build_graph(config).render(graph_inputs(config))

    messages = [f.message for f in check_naming(plan)]

    assert "Both flows use resource group 'rg-shared'" in messages
    assert "Both flows use key vault 'kv-shared'" in messages


def test_single_flow_plan_passes():
    config = merge_defaults({'location': 'eastus2', 'subnet_id': SUBNET_ID, 'sse': {'enabled': False}})
    plan = build_graph(config).render(graph_inputs(config))

    assert check_plan(plan) == []


def test_failure_string_names_check(plan):
    plan[SSE_KEY_VAULT].params['enablePurgeProtection'] = False

    assert str(check_sse_flags(plan)[0]).startswith('[sse-flags] ')
