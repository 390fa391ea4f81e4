"""Copy the ConfigMaps and Secrets a cluster depends on into another namespace.

A PostgresCluster references extra pgBackRest configuration in
`spec.backups.pgbackrest.configuration`. A clone in another namespace can only
start once copies of these objects exist next to it.
"""

import copy
import logging
from typing import List, Tuple

from pgclone.defaults import purpose_labels
from pgclone.errors import (
    AlreadyExists,
    CloneError,
    ConflictNotOverwritable,
    DependencyNotFound,
    NotFound,
)
from pgclone.filtering import filter_annotations, filter_labels
from pgclone.models import DependencyReference, K8sMetadata, PostgresCluster
from pgclone.store import ObjectStore

logit = logging.getLogger("pgclone")

# Payload fields we copy for each kind.
PAYLOAD_KEYS = {
    "ConfigMap": ("data", "binaryData"),
    "Secret": ("type", "data"),
}


def dependency_references(source: PostgresCluster) -> List[DependencyReference]:
    """Return the ConfigMaps and Secrets `source` mounts into pgBackRest."""
    out = []
    for conf in source.spec.backups.pgbackrest.configuration or []:
        if conf.configMap is not None:
            out.append(DependencyReference(kind="configmap", name=conf.configMap.name))
        elif conf.secret is not None:
            out.append(DependencyReference(kind="secret", name=conf.secret.name))
    return out


def partition(refs: List[DependencyReference]) -> Tuple[List[str], List[str]]:
    """Return the ConfigMap and Secret names in `refs`."""
    configmaps = [_.name for _ in refs if _.kind == "configmap"]
    secrets = [_.name for _ in refs if _.kind == "secret"]
    return configmaps, secrets


def copy_manifest(kind: str, original: dict, namespace: str, clone_name: str) -> dict:
    """Return a copy of the ConfigMap or Secret `original` for `namespace`.

    The copy has the same name and payload but none of the server populated
    fields like `resourceVersion` or `uid`.

    """
    meta = K8sMetadata.model_validate(original.get("metadata", {}))
    labels = filter_labels(meta.labels) | purpose_labels(clone_name)

    out = dict(
        apiVersion="v1",
        kind=kind,
        metadata=dict(
            name=meta.name,
            namespace=namespace,
            labels=labels,
            annotations=filter_annotations(meta.annotations),
        ),
    )
    for key in PAYLOAD_KEYS[kind]:
        if key in original:
            out[key] = original[key]
    return out


async def upsert(store: ObjectStore, kind: str, manifest: dict, overwrite: bool) -> bool:
    """Create `manifest` or update it if `overwrite` is set.

    Return `True` if the object was created and `False` if it was updated.

    """
    namespace, name = manifest["metadata"]["namespace"], manifest["metadata"]["name"]
    try:
        await store.create(kind, namespace, manifest)
        return True
    except AlreadyExists:
        if not overwrite:
            raise ConflictNotOverwritable(
                f"{kind} {namespace}/{name} already exists and must not be overwritten"
            )

    await store.update(kind, namespace, manifest)
    return False


async def replicate_object(
    store: ObjectStore,
    kind: str,
    name: str,
    from_namespace: str,
    to_namespace: str,
    overwrite: bool,
    clone_name: str,
) -> bool:
    """Copy one object and return `True` if we created it."""
    try:
        original = await store.get(kind, from_namespace, name)
    except NotFound:
        raise DependencyNotFound(f"{kind} {from_namespace}/{name} does not exist")

    manifest = copy_manifest(kind, original, to_namespace, clone_name)
    return await upsert(store, kind, manifest, overwrite)


async def delete_objects(
    store: ObjectStore, kind: str, names: List[str], namespace: str
) -> None:
    """Delete as many of the objects as possible.

    This only runs to clean up after a failure. Errors are logged but never
    raised so that they cannot mask the error that triggered the cleanup.

    """
    for name in names:
        try:
            await store.delete(kind, namespace, name)
        except CloneError as err:
            logit.error(f"cannot delete {kind} {namespace}/{name}", {"reason": str(err)})


async def delete_configmaps(store: ObjectStore, names: List[str], namespace: str) -> None:
    await delete_objects(store, "ConfigMap", names, namespace)


async def delete_secrets(store: ObjectStore, names: List[str], namespace: str) -> None:
    await delete_objects(store, "Secret", names, namespace)


async def replicate(
    store: ObjectStore,
    source: PostgresCluster,
    from_namespace: str,
    to_namespace: str,
    overwrite: bool,
    clone_name: str,
) -> Tuple[List[str], List[str]]:
    """Copy all ConfigMaps and Secrets `source` depends on to `to_namespace`.

    Return the names of the ConfigMaps and Secrets this function created.
    Objects that already existed and were updated are not part of the output.

    On the first failure, this function deletes every object it created so far
    and raises the original error. The caller has nothing to clean up in that
    case.

    """
    configmaps, secrets = partition(dependency_references(source))
    created: List[Tuple[str, str]] = []

    try:
        for kind, names in (("ConfigMap", configmaps), ("Secret", secrets)):
            for name in names:
                if await replicate_object(
                    store, kind, name, from_namespace, to_namespace, overwrite, clone_name
                ):
                    created.append((kind, name))
    except CloneError as err:
        logit.error(
            f"cannot copy dependencies of {source.metadata.name} to {to_namespace}",
            {"reason": str(err)},
        )
        for kind, name in created:
            await delete_objects(store, kind, [name], to_namespace)
        raise

    created_cms = [name for kind, name in created if kind == "ConfigMap"]
    created_secrets = [name for kind, name in created if kind == "Secret"]
    return created_cms, created_secrets


async def ensure_configmap(
    store: ObjectStore, namespace: str, manifest: dict, overwrite: bool
) -> bool:
    """Create the ConfigMap `manifest` in `namespace` and return `True` if we created it."""
    manifest = copy.deepcopy(manifest)
    manifest["metadata"]["namespace"] = namespace
    return await upsert(store, "ConfigMap", manifest, overwrite)
