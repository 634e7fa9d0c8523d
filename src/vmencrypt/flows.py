"""
Encryption Flows Module

Wires the resource modules into the two disk-encryption flows:

* ADE: resource group -> key vault -> VM with the Azure Disk Encryption
  extension pointed at the vault's key.
* SSE/CMK: resource group -> user-assigned identity -> key vault (with a
  crypto role assignment for the identity) -> disk encryption set -> VM whose
  disks reference the encryption set, with encryption at host enabled.

The flows share nothing but top-level parameters.
"""

import logging
from typing import Any, Dict, Optional

from .graph import Format, ModuleNode, OutputRef, Parameter, ParamRef, ResourceGraph
from .modules import CATALOG, ModuleSpec

logger = logging.getLogger(__name__)

# Node names
ADE_RESOURCE_GROUP = "adeResourceGroup"
ADE_KEY_VAULT = "adeKeyVault"
ADE_VIRTUAL_MACHINE = "adeVirtualMachine"

SSE_RESOURCE_GROUP = "sseResourceGroup"
SSE_MANAGED_IDENTITY = "sseManagedIdentity"
SSE_KEY_VAULT = "sseKeyVault"
SSE_DISK_ENCRYPTION_SET = "sseDiskEncryptionSet"
SSE_VIRTUAL_MACHINE = "sseVirtualMachine"

CRYPTO_SERVICE_ENCRYPTION_USER = "Key Vault Crypto Service Encryption User"
CUSTOMER_KEY_ENCRYPTION = "EncryptionAtRestWithCustomerKey"
PREMIUM_DISK = "Premium_LRS"

DEFAULT_IMAGE = {
    "publisher": "MicrosoftWindowsServer",
    "offer": "WindowsServer",
    "sku": "2022-datacenter-azure-edition",
    "version": "latest",
}


def declare_parameters(graph: ResourceGraph):
    """Declare the top-level parameters both flows read."""
    graph.add_parameter(Parameter(
        'location', required=True,
        description="Location for all resources"))
    graph.add_parameter(Parameter(
        'subnetId', required=True,
        description="Resource ID of the existing subnet for the VM network interfaces"))
    graph.add_parameter(Parameter(
        'adminUsername', default='localAdminUser',
        description="Local administrator username for the VMs"))
    graph.add_parameter(Parameter(
        'adminPassword', secure=True, generated_default='newGuid()',
        description="Local administrator password for the VMs"))
    graph.add_parameter(Parameter(
        'adeName', default='vmAde',
        description="Naming root for the Azure Disk Encryption resources"))
    graph.add_parameter(Parameter(
        'sseName', default='vmSse',
        description="Naming root for the Server-Side Encryption resources"))
    graph.add_parameter(Parameter(
        'keyName', default='encryptKey',
        description="Name of the RSA key created in each key vault"))
    graph.add_parameter(Parameter(
        'vmSize', default='Standard_D2s_v3',
        description="Size of the virtual machines"))


def _with_tags(params: Dict[str, Any], tags: Optional[Dict[str, str]]) -> Dict[str, Any]:
    if tags:
        params['tags'] = dict(tags)
    return params


def _vm_params(name_param: str, vm: Dict[str, Any], encryption_at_host: bool,
               disk_encryption_set: Optional[OutputRef] = None) -> Dict[str, Any]:
    """Parameters shared by both VMs."""

    def managed_disk():
        disk = {"storageAccountType": PREMIUM_DISK}
        if disk_encryption_set is not None:
            disk["diskEncryptionSetResourceId"] = disk_encryption_set
        return disk

    return {
        "name": ParamRef(name_param),
        "location": ParamRef('location'),
        "adminUsername": ParamRef('adminUsername'),
        "adminPassword": ParamRef('adminPassword'),
        "osType": "Windows",
        "vmSize": ParamRef('vmSize'),
        "zone": 0,
        "imageReference": dict(vm.get('image') or DEFAULT_IMAGE),
        "encryptionAtHost": encryption_at_host,
        "nicConfigurations": [
            {
                "nicSuffix": "-nic-01",
                "ipConfigurations": [
                    {
                        "name": "ipconfig01",
                        "subnetResourceId": ParamRef('subnetId'),
                    }
                ],
            }
        ],
        "osDisk": {
            "caching": "ReadWrite",
            "diskSizeGB": vm.get('os_disk_size_gb', 128),
            "managedDisk": managed_disk(),
        },
        "dataDisks": [
            {
                "lun": 0,
                "caching": "ReadOnly",
                "diskSizeGB": vm.get('data_disk_size_gb', 128),
                "managedDisk": managed_disk(),
            }
        ],
    }


def add_ade_flow(graph: ResourceGraph,
                 catalog: Optional[Dict[str, ModuleSpec]] = None,
                 vm: Optional[Dict[str, Any]] = None,
                 tags: Optional[Dict[str, str]] = None,
                 use_cmk: bool = True):
    """
    Add the Azure Disk Encryption flow.

    Args:
        graph: Graph to extend (parameters must already be declared)
        catalog: Module catalog, defaults to the pinned versions
        vm: VM settings (image, disk sizes)
        tags: Tags applied to every resource
        use_cmk: Wrap the volume keys with the vault's key. Without it the
            extension runs in platform-managed-key mode.
    """
    catalog = catalog or CATALOG
    vm = vm or {}
    resource_group = Format('rg-{0}', ParamRef('adeName'))

    graph.add_node(ModuleNode(
        name=ADE_RESOURCE_GROUP,
        module=catalog['resource-group'],
        params=_with_tags({
            "name": resource_group,
            "location": ParamRef('location'),
        }, tags),
    ))

    graph.add_node(ModuleNode(
        name=ADE_KEY_VAULT,
        module=catalog['key-vault'],
        resource_group=resource_group,
        depends_on=[ADE_RESOURCE_GROUP],
        params=_with_tags({
            "name": Format('kv-{0}', ParamRef('adeName')),
            "location": ParamRef('location'),
            "sku": "standard",
            "enablePurgeProtection": False,
            "enableSoftDelete": False,
            "enableVaultForDiskEncryption": True,
            "keys": [
                {
                    "name": ParamRef('keyName'),
                    "kty": "RSA",
                }
            ],
        }, tags),
    ))

    settings = {
        "EncryptionOperation": "EnableEncryption",
        "KeyEncryptionAlgorithm": "RSA-OAEP",
        "KeyEncryptionKeyURL": OutputRef(ADE_KEY_VAULT, 'keys', (0, 'uriWithVersion')),
        "KekVaultResourceId": OutputRef(ADE_KEY_VAULT, 'resourceId'),
        "KeyVaultResourceId": OutputRef(ADE_KEY_VAULT, 'resourceId'),
        "KeyVaultURL": OutputRef(ADE_KEY_VAULT, 'uri'),
        "ResizeOSDisk": False,
        "VolumeType": "All",
    }
    if not use_cmk:
        del settings["KeyEncryptionKeyURL"]
        del settings["KekVaultResourceId"]

    vm_params = _vm_params('adeName', vm, encryption_at_host=False)
    vm_params["extensionAzureDiskEncryptionConfig"] = {
        "enabled": True,
        "settings": settings,
    }
    graph.add_node(ModuleNode(
        name=ADE_VIRTUAL_MACHINE,
        module=catalog['virtual-machine'],
        resource_group=resource_group,
        params=_with_tags(vm_params, tags),
    ))

    graph.add_output('adeVirtualMachineResourceId', 'string', OutputRef(ADE_VIRTUAL_MACHINE, 'resourceId'))
    graph.add_output('adeKeyVaultUri', 'string', OutputRef(ADE_KEY_VAULT, 'uri'))
    logger.debug("Added ADE flow (cmk=%s)", use_cmk)


def add_sse_flow(graph: ResourceGraph,
                 catalog: Optional[Dict[str, ModuleSpec]] = None,
                 vm: Optional[Dict[str, Any]] = None,
                 tags: Optional[Dict[str, str]] = None):
    """
    Add the Server-Side Encryption flow with a customer managed key.

    Args:
        graph: Graph to extend (parameters must already be declared)
        catalog: Module catalog, defaults to the pinned versions
        vm: VM settings (image, disk sizes)
        tags: Tags applied to every resource
    """
    catalog = catalog or CATALOG
    vm = vm or {}
    resource_group = Format('rg-{0}', ParamRef('sseName'))

    graph.add_node(ModuleNode(
        name=SSE_RESOURCE_GROUP,
        module=catalog['resource-group'],
        params=_with_tags({
            "name": resource_group,
            "location": ParamRef('location'),
        }, tags),
    ))

    graph.add_node(ModuleNode(
        name=SSE_MANAGED_IDENTITY,
        module=catalog['user-assigned-identity'],
        resource_group=resource_group,
        depends_on=[SSE_RESOURCE_GROUP],
        params=_with_tags({
            "name": Format('uami-{0}', ParamRef('sseName')),
            "location": ParamRef('location'),
        }, tags),
    ))

    # Disk encryption sets refuse vaults without purge protection and soft delete.
    graph.add_node(ModuleNode(
        name=SSE_KEY_VAULT,
        module=catalog['key-vault'],
        resource_group=resource_group,
        depends_on=[SSE_RESOURCE_GROUP],
        params=_with_tags({
            "name": Format('kv-{0}', ParamRef('sseName')),
            "location": ParamRef('location'),
            "sku": "standard",
            "enablePurgeProtection": True,
            "enableSoftDelete": True,
            "enableRbacAuthorization": True,
            "keys": [
                {
                    "name": ParamRef('keyName'),
                    "kty": "RSA",
                }
            ],
            "roleAssignments": [
                {
                    "principalId": OutputRef(SSE_MANAGED_IDENTITY, 'principalId'),
                    "roleDefinitionIdOrName": CRYPTO_SERVICE_ENCRYPTION_USER,
                    "principalType": "ServicePrincipal",
                }
            ],
        }, tags),
    ))

    graph.add_node(ModuleNode(
        name=SSE_DISK_ENCRYPTION_SET,
        module=catalog['disk-encryption-set'],
        resource_group=resource_group,
        params=_with_tags({
            "name": Format('des-{0}', ParamRef('sseName')),
            "location": ParamRef('location'),
            "encryptionType": CUSTOMER_KEY_ENCRYPTION,
            "keyName": ParamRef('keyName'),
            "keyVaultResourceId": OutputRef(SSE_KEY_VAULT, 'resourceId'),
            "rotationToLatestKeyVersionEnabled": False,
            "managedIdentities": {
                "userAssignedResourceIds": [
                    OutputRef(SSE_MANAGED_IDENTITY, 'resourceId'),
                ]
            },
        }, tags),
    ))

    vm_params = _vm_params(
        'sseName', vm,
        encryption_at_host=True,
        disk_encryption_set=OutputRef(SSE_DISK_ENCRYPTION_SET, 'resourceId'),
    )
    graph.add_node(ModuleNode(
        name=SSE_VIRTUAL_MACHINE,
        module=catalog['virtual-machine'],
        resource_group=resource_group,
        params=_with_tags(vm_params, tags),
    ))

    graph.add_output('sseVirtualMachineResourceId', 'string', OutputRef(SSE_VIRTUAL_MACHINE, 'resourceId'))
    graph.add_output('sseDiskEncryptionSetResourceId', 'string', OutputRef(SSE_DISK_ENCRYPTION_SET, 'resourceId'))
    logger.debug("Added SSE/CMK flow")


def build_graph(config: Dict[str, Any], catalog: Optional[Dict[str, ModuleSpec]] = None) -> ResourceGraph:
    """
    Build the resource graph for a loaded configuration.

    Args:
        config: Configuration dictionary (see ConfigLoader)
        catalog: Module catalog, defaults to the pinned versions

    Returns:
        Graph with the parameters and every enabled flow
    """
    graph = ResourceGraph()
    declare_parameters(graph)

    vm = config.get('vm', {})
    tags = config.get('tags', {})

    if config.get('ade', {}).get('enabled', True):
        add_ade_flow(graph, catalog, vm=vm, tags=tags,
                     use_cmk=config.get('ade', {}).get('use_cmk', True))
    if config.get('sse', {}).get('enabled', True):
        add_sse_flow(graph, catalog, vm=vm, tags=tags)

    return graph


def graph_inputs(config: Dict[str, Any]) -> Dict[str, Any]:
    """Map configuration values to top-level parameter values."""
    inputs = {
        'location': config.get('location'),
        'subnetId': config.get('subnet_id'),
        'adminUsername': config.get('admin_username'),
        'adminPassword': config.get('admin_password'),
        'adeName': config.get('ade', {}).get('name'),
        'sseName': config.get('sse', {}).get('name'),
        'keyName': config.get('key_name'),
        'vmSize': config.get('vm', {}).get('size'),
    }
    return {k: v for k, v in inputs.items() if v is not None}
