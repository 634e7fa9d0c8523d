"""
Module Catalog

Externally maintained, versioned resource modules (Azure Verified Modules)
that the deployment wires together. Each entry declares the outputs other
modules may consume and how to predict those outputs before deployment.
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

REGISTRY = "br/public"
SOURCE_REPOSITORY = "https://raw.githubusercontent.com/Azure/bicep-registry-modules"

SUBSCRIPTION_SCOPE = "subscription"
RESOURCE_GROUP_SCOPE = "resourceGroup"

# Stands in for the subscription ID when none is known at render time.
CURRENT_SUBSCRIPTION = "<subscription().subscriptionId>"

Predictor = Callable[[str, Dict[str, Any], str], Dict[str, Any]]


@dataclass(frozen=True)
class ModuleSpec:
    """A versioned module reference and its output contract."""
    key: str
    path: str
    version: str
    scope: str
    resource_type: str
    outputs: Dict[str, str]
    predictor: Predictor
    description: str = ""

    @property
    def reference(self) -> str:
        """Bicep registry reference, e.g. ``br/public:avm/res/key-vault/vault:0.12.1``."""
        return f"{REGISTRY}:{self.path}:{self.version}"

    @property
    def template_uri(self) -> str:
        """Compiled ARM template of the module at its release tag."""
        return f"{SOURCE_REPOSITORY}/{self.path}/{self.version}/{self.path}/main.json"

    def with_version(self, version: str) -> "ModuleSpec":
        return replace(self, version=version)

    def predict_outputs(self, node: str, params: Dict[str, Any],
                        resource_group: Optional[str],
                        subscription_id: Optional[str] = None) -> Dict[str, Any]:
        """Predict this module's outputs from its resolved inputs."""
        scope_id = f"/subscriptions/{subscription_id or CURRENT_SUBSCRIPTION}"
        if resource_group is not None:
            scope_id = f"{scope_id}/resourceGroups/{resource_group}"
        outputs = self.predictor(node, params, scope_id)
        missing = set(self.outputs) - set(outputs)
        if missing:
            raise ValueError(
                f"Module '{self.key}' did not predict output(s): {', '.join(sorted(missing))}"
            )
        return outputs


def deferred(node: str, output: str) -> str:
    """Token for an output only known once the engine has deployed ``node``."""
    return f"<{node}.{output}>"


def _provider_id(scope_id: str, resource_type: str, name: str) -> str:
    return f"{scope_id}/providers/{resource_type}/{name}"


def _predict_resource_group(node, params, scope_id):
    name = params['name']
    return {
        "name": name,
        "resourceId": f"{scope_id}/resourceGroups/{name}",
        "location": params.get('location'),
    }


def _predict_key_vault(node, params, scope_id):
    name = params['name']
    vault_id = _provider_id(scope_id, "Microsoft.KeyVault/vaults", name)
    vault_uri = f"https://{name}.vault.azure.net/"
    keys: List[Dict[str, Any]] = []
    for index, key in enumerate(params.get('keys', [])):
        keys.append({
            "name": key['name'],
            "resourceId": f"{vault_id}/keys/{key['name']}",
            "uri": f"{vault_uri}keys/{key['name']}",
            "uriWithVersion": deferred(node, f"keys[{index}].uriWithVersion"),
        })
    return {
        "name": name,
        "resourceId": vault_id,
        "uri": vault_uri,
        "keys": keys,
    }


def _predict_user_assigned_identity(node, params, scope_id):
    name = params['name']
    return {
        "name": name,
        "resourceId": _provider_id(scope_id, "Microsoft.ManagedIdentity/userAssignedIdentities", name),
        "principalId": deferred(node, "principalId"),
        "clientId": deferred(node, "clientId"),
    }


def _predict_disk_encryption_set(node, params, scope_id):
    name = params['name']
    identities = params.get('managedIdentities', {})
    return {
        "name": name,
        "resourceId": _provider_id(scope_id, "Microsoft.Compute/diskEncryptionSets", name),
        # Only populated when a system-assigned identity is enabled.
        "principalId": deferred(node, "principalId") if identities.get('systemAssigned') else "",
        "identities": list(identities.get('userAssignedResourceIds', [])),
    }


def _predict_virtual_machine(node, params, scope_id):
    name = params['name']
    return {
        "name": name,
        "resourceId": _provider_id(scope_id, "Microsoft.Compute/virtualMachines", name),
        "location": params.get('location'),
    }


RESOURCE_GROUP = ModuleSpec(
    key="resource-group",
    path="avm/res/resources/resource-group",
    version="0.4.1",
    scope=SUBSCRIPTION_SCOPE,
    resource_type="Microsoft.Resources/resourceGroups",
    outputs={"name": "string", "resourceId": "string", "location": "string"},
    predictor=_predict_resource_group,
    description="Resource group scoping one encryption flow",
)

KEY_VAULT = ModuleSpec(
    key="key-vault",
    path="avm/res/key-vault/vault",
    version="0.12.1",
    scope=RESOURCE_GROUP_SCOPE,
    resource_type="Microsoft.KeyVault/vaults",
    outputs={"name": "string", "resourceId": "string", "uri": "string", "keys": "array"},
    predictor=_predict_key_vault,
    description="Key vault holding the RSA key encryption key",
)

USER_ASSIGNED_IDENTITY = ModuleSpec(
    key="user-assigned-identity",
    path="avm/res/managed-identity/user-assigned-identity",
    version="0.4.1",
    scope=RESOURCE_GROUP_SCOPE,
    resource_type="Microsoft.ManagedIdentity/userAssignedIdentities",
    outputs={"name": "string", "resourceId": "string", "principalId": "string", "clientId": "string"},
    predictor=_predict_user_assigned_identity,
    description="Identity the disk encryption set uses to reach the key vault",
)

DISK_ENCRYPTION_SET = ModuleSpec(
    key="disk-encryption-set",
    path="avm/res/compute/disk-encryption-set",
    version="0.5.1",
    scope=RESOURCE_GROUP_SCOPE,
    resource_type="Microsoft.Compute/diskEncryptionSets",
    outputs={"name": "string", "resourceId": "string", "principalId": "string", "identities": "array"},
    predictor=_predict_disk_encryption_set,
    description="Binds identity, key and encryption-at-rest policy for managed disks",
)

VIRTUAL_MACHINE = ModuleSpec(
    key="virtual-machine",
    path="avm/res/compute/virtual-machine",
    version="0.15.0",
    scope=RESOURCE_GROUP_SCOPE,
    resource_type="Microsoft.Compute/virtualMachines",
    outputs={"name": "string", "resourceId": "string", "location": "string"},
    predictor=_predict_virtual_machine,
    description="Windows virtual machine with premium managed disks",
)

CATALOG: Dict[str, ModuleSpec] = {
    spec.key: spec
    for spec in (RESOURCE_GROUP, USER_ASSIGNED_IDENTITY, KEY_VAULT, DISK_ENCRYPTION_SET, VIRTUAL_MACHINE)
}


def resolve_catalog(versions: Optional[Dict[str, str]] = None) -> Dict[str, ModuleSpec]:
    """
    Return the catalog with version pins overridden.

    Args:
        versions: Mapping of module key to version, e.g. ``{'key-vault': '0.13.0'}``

    Raises:
        ValueError: If a key does not name a known module
    """
    catalog = dict(CATALOG)
    for key, version in (versions or {}).items():
        if key not in catalog:
            raise ValueError(f"Unknown module '{key}'. Known modules: {', '.join(CATALOG)}")
        catalog[key] = catalog[key].with_version(str(version))
    return catalog
