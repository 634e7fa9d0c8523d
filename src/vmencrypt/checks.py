"""
Plan Checks

Consistency checks over a rendered plan: the flag combinations each
encryption mode needs and the cross-references between modules. Checks only
apply to the flows present in the plan.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .flows import (
    ADE_KEY_VAULT, ADE_RESOURCE_GROUP, ADE_VIRTUAL_MACHINE, CRYPTO_SERVICE_ENCRYPTION_USER,
    SSE_DISK_ENCRYPTION_SET, SSE_KEY_VAULT, SSE_MANAGED_IDENTITY, SSE_RESOURCE_GROUP,
    SSE_VIRTUAL_MACHINE,
)
from .graph import Plan


@dataclass
class CheckFailure:
    check: str
    message: str

    def __str__(self):
        return f"[{self.check}] {self.message}"


def _expect(failures: List[CheckFailure], check: str, actual: Any, expected: Any, what: str):
    if actual != expected:
        failures.append(CheckFailure(check, f"{what} is {actual!r}, expected {expected!r}"))


def check_ade_flags(plan: Plan) -> List[CheckFailure]:
    """ADE vault has neither purge protection nor soft delete; ADE VM has no encryption at host."""
    failures: List[CheckFailure] = []
    if ADE_KEY_VAULT not in plan:
        return failures
    vault = plan[ADE_KEY_VAULT].params
    vm = plan[ADE_VIRTUAL_MACHINE].params
    _expect(failures, 'ade-flags', vault.get('enablePurgeProtection'), False, "ADE key vault enablePurgeProtection")
    _expect(failures, 'ade-flags', vault.get('enableSoftDelete'), False, "ADE key vault enableSoftDelete")
    _expect(failures, 'ade-flags', vm.get('encryptionAtHost'), False, "ADE VM encryptionAtHost")
    return failures


def check_sse_flags(plan: Plan) -> List[CheckFailure]:
    """SSE vault has purge protection and soft delete; SSE VM has encryption at host."""
    failures: List[CheckFailure] = []
    if SSE_KEY_VAULT not in plan:
        return failures
    vault = plan[SSE_KEY_VAULT].params
    vm = plan[SSE_VIRTUAL_MACHINE].params
    _expect(failures, 'sse-flags', vault.get('enablePurgeProtection'), True, "SSE key vault enablePurgeProtection")
    _expect(failures, 'sse-flags', vault.get('enableSoftDelete'), True, "SSE key vault enableSoftDelete")
    _expect(failures, 'sse-flags', vm.get('encryptionAtHost'), True, "SSE VM encryptionAtHost")
    return failures


def check_ade_key_vault_reference(plan: Plan, use_cmk: bool = True) -> List[CheckFailure]:
    """The ADE extension points at the vault created in the same flow."""
    failures: List[CheckFailure] = []
    if ADE_VIRTUAL_MACHINE not in plan:
        return failures
    vault = plan[ADE_KEY_VAULT].outputs
    extension = plan[ADE_VIRTUAL_MACHINE].params.get('extensionAzureDiskEncryptionConfig', {})
    settings = extension.get('settings', {})

    _expect(failures, 'ade-key-vault', extension.get('enabled'), True, "ADE extension enabled")
    _expect(failures, 'ade-key-vault', settings.get('KeyVaultResourceId'), vault['resourceId'],
            "KeyVaultResourceId")
    _expect(failures, 'ade-key-vault', settings.get('KeyVaultURL'), vault['uri'], "KeyVaultURL")
    if use_cmk:
        _expect(failures, 'ade-key-vault', settings.get('KekVaultResourceId'), vault['resourceId'],
                "KekVaultResourceId")
        key_url = settings.get('KeyEncryptionKeyURL')
        if not key_url:
            failures.append(CheckFailure('ade-key-vault', "KeyEncryptionKeyURL is empty"))
        else:
            keys = vault.get('keys') or [{}]
            _expect(failures, 'ade-key-vault', key_url, keys[0].get('uriWithVersion'), "KeyEncryptionKeyURL")
    return failures


def check_sse_disk_references(plan: Plan) -> List[CheckFailure]:
    """Both SSE VM disks reference the disk encryption set of the same flow."""
    failures: List[CheckFailure] = []
    if SSE_VIRTUAL_MACHINE not in plan:
        return failures
    des_id = plan[SSE_DISK_ENCRYPTION_SET].outputs['resourceId']
    vm = plan[SSE_VIRTUAL_MACHINE].params

    os_disk = vm.get('osDisk', {}).get('managedDisk', {})
    _expect(failures, 'sse-disks', os_disk.get('diskEncryptionSetResourceId'), des_id,
            "OS disk diskEncryptionSetResourceId")
    data_disks = vm.get('dataDisks', [])
    if not data_disks:
        failures.append(CheckFailure('sse-disks', "SSE VM has no data disk"))
    for index, disk in enumerate(data_disks):
        _expect(failures, 'sse-disks', disk.get('managedDisk', {}).get('diskEncryptionSetResourceId'), des_id,
                f"Data disk {index} diskEncryptionSetResourceId")
    return failures


def check_sse_identity(plan: Plan) -> List[CheckFailure]:
    """The identity is granted crypto rights on the vault and bound to the encryption set."""
    failures: List[CheckFailure] = []
    if SSE_MANAGED_IDENTITY not in plan:
        return failures
    identity = plan[SSE_MANAGED_IDENTITY].outputs
    vault = plan[SSE_KEY_VAULT].params
    des = plan[SSE_DISK_ENCRYPTION_SET].params

    grants = [
        assignment for assignment in vault.get('roleAssignments', [])
        if assignment.get('roleDefinitionIdOrName') == CRYPTO_SERVICE_ENCRYPTION_USER
    ]
    if not grants:
        failures.append(CheckFailure(
            'sse-identity', f"SSE key vault has no '{CRYPTO_SERVICE_ENCRYPTION_USER}' role assignment"))
    for assignment in grants:
        _expect(failures, 'sse-identity', assignment.get('principalId'), identity['principalId'],
                "Role assignment principalId")

    bound = des.get('managedIdentities', {}).get('userAssignedResourceIds', [])
    _expect(failures, 'sse-identity', bound, [identity['resourceId']],
            "Disk encryption set userAssignedResourceIds")
    _expect(failures, 'sse-identity', des.get('keyVaultResourceId'), plan[SSE_KEY_VAULT].outputs['resourceId'],
            "Disk encryption set keyVaultResourceId")
    return failures


def check_naming(plan: Plan) -> List[CheckFailure]:
    """The two flows' resource groups and key vaults do not collide."""
    failures: List[CheckFailure] = []
    if ADE_RESOURCE_GROUP not in plan or SSE_RESOURCE_GROUP not in plan:
        return failures
    ade_rg = plan[ADE_RESOURCE_GROUP].outputs['name']
    sse_rg = plan[SSE_RESOURCE_GROUP].outputs['name']
    if ade_rg.lower() == sse_rg.lower():
        failures.append(CheckFailure('naming', f"Both flows use resource group '{ade_rg}'"))
    ade_kv = plan[ADE_KEY_VAULT].outputs['name']
    sse_kv = plan[SSE_KEY_VAULT].outputs['name']
    if ade_kv.lower() == sse_kv.lower():
        failures.append(CheckFailure('naming', f"Both flows use key vault '{ade_kv}'"))
    for resource in plan.resources:
        expected = ade_rg if resource.name.startswith('ade') else sse_rg
        if resource.resource_group is not None and resource.resource_group != expected:
            failures.append(CheckFailure(
                'naming', f"{resource.name} is scoped to '{resource.resource_group}', expected '{expected}'"))
    return failures


CHECKS: Dict[str, Callable[[Plan], List[CheckFailure]]] = {
    'ade-flags': check_ade_flags,
    'sse-flags': check_sse_flags,
    'ade-key-vault': check_ade_key_vault_reference,
    'sse-disks': check_sse_disk_references,
    'sse-identity': check_sse_identity,
    'naming': check_naming,
}


def check_plan(plan: Plan, use_cmk: Optional[bool] = None) -> List[CheckFailure]:
    """
    Run every check against ``plan``.

    Args:
        plan: Rendered plan
        use_cmk: Whether the ADE flow is expected to use a key encryption key.
            Inferred from the plan when omitted.

    Returns:
        All failures, empty when the plan is consistent
    """
    if use_cmk is None and ADE_VIRTUAL_MACHINE in plan:
        settings = (plan[ADE_VIRTUAL_MACHINE].params
                    .get('extensionAzureDiskEncryptionConfig', {})
                    .get('settings', {}))
        use_cmk = 'KekVaultResourceId' in settings

    failures: List[CheckFailure] = []
    for name, check in CHECKS.items():
        if name == 'ade-key-vault':
            failures.extend(check_ade_key_vault_reference(plan, use_cmk=bool(use_cmk)))
        else:
            failures.extend(check(plan))
    return failures
