import logging
from typing import List

from pgclone.errors import CloneError, ExternalCallFailed, InvalidInput
from pgclone.generate import parse_cluster
from pgclone.store import ObjectStore

logit = logging.getLogger("pgclone")

# Inclusive range of replicas we allow on the first instance set.
MIN_REPLICAS, MAX_REPLICAS = 1, 4


def validate_replica_count(count: int) -> None:
    if not (MIN_REPLICAS <= count <= MAX_REPLICAS):
        raise InvalidInput(
            f"replica count must be between {MIN_REPLICAS} and {MAX_REPLICAS} "
            f"but is {count}"
        )


async def _apply(store: ObjectStore, manifest: dict, count: int) -> dict:
    # Validate the manifest but update the raw copy to preserve all fields.
    parse_cluster(manifest)
    manifest["spec"]["instances"][0]["replicas"] = count

    namespace, name = manifest["metadata"]["namespace"], manifest["metadata"]["name"]
    ret = await store.update("PostgresCluster", namespace, manifest)
    logit.info(f"set replicas of {namespace}/{name} to {count}")
    return ret


async def update_replica_count(
    store: ObjectStore, namespace: str, name: str, count: int
) -> dict:
    """Set the replicas of the first instance set of cluster `name`.

    The count is validated before we talk to K8s.

    """
    validate_replica_count(count)
    manifest = await store.get("PostgresCluster", namespace, name)
    return await _apply(store, manifest, count)


async def update_all_replica_counts(
    store: ObjectStore, namespace: str, count: int
) -> List[str]:
    """Set the replicas of every cluster in `namespace` and return their names.

    An empty `namespace` means all namespaces. A failed update does not stop
    the remaining ones. All failures are reported together at the end.

    """
    validate_replica_count(count)
    clusters = await store.list("PostgresCluster", namespace)
    logit.info(f"changing replica count to {count} for {len(clusters)} clusters")

    updated, failed = [], []
    for idx, manifest in enumerate(clusters):
        meta = manifest.get("metadata", {})
        name = f"{meta.get('namespace', '')}/{meta.get('name', '')}"
        logit.info(f"({idx + 1}/{len(clusters)}) {name}")
        try:
            await _apply(store, manifest, count)
        except CloneError as err:
            failed.append(f"{name}: {err}")
            continue
        updated.append(name)

    if len(failed) > 0:
        logit.error("cannot update all clusters", {"failed": failed})
        raise ExternalCallFailed(
            "failed to update at least one cluster:\n - " + str.join("\n - ", failed)
        )
    return updated
