"""Project the fields of a source PostgresCluster into the spec of its clone.

All functions are pure. They never modify their inputs and always return new
objects.
"""

import copy
import logging
import re
from decimal import Decimal
from typing import List

from pgclone.defaults import (
    COPIED_INSTANCE_KEYS,
    COPIED_PGBACKREST_KEYS,
    COPIED_SPEC_KEYS,
    DROPPED_GLOBAL_PREFIX,
    LOCAL_REPO_NAME,
)
from pgclone.filtering import filter_metadata
from pgclone.models import (
    Backups,
    InstanceSet,
    PgBackrestRepo,
    PostgresCluster,
    PostgresClusterSpec,
)

logit = logging.getLogger("pgclone")

# Kubernetes quantity, eg `10Gi`, `1.5G` or `500M`.
QUANTITY = re.compile(r"^(?P<number>[0-9]+(\.[0-9]+)?)(?P<suffix>[A-Za-z]*)$")

# The local repository of a clone is this many times larger than its data volume.
REPO_SIZE_FACTOR = 3


def dump(model) -> dict:
    """Return the fields of `model` exactly as they appeared in the input."""
    return model.model_dump(by_alias=True, exclude_unset=True)


def project_spec_fields(spec: PostgresClusterSpec) -> dict:
    raw = dump(spec)
    return {key: copy.deepcopy(raw[key]) for key in COPIED_SPEC_KEYS if key in raw}


def project_instances(instances: List[InstanceSet]) -> List[dict]:
    """Return the instance sets without affinity and topology constraints."""
    keep = set(COPIED_INSTANCE_KEYS)
    out = []
    for instance in instances:
        out.append(instance.model_dump(include=keep, exclude_unset=True))
    return out


def scale_quantity(quantity: str, factor: int) -> str:
    """Return `quantity * factor`, or `quantity` itself if it cannot be parsed."""
    match = QUANTITY.match(quantity.strip())
    if not match:
        return quantity
    number = Decimal(match["number"]) * factor
    return f"{number.normalize():f}{match['suffix']}"


def local_repo_volume(instances: List[InstanceSet]) -> dict:
    """Return a volume for a new local repository, or an empty dict.

    The size derives from the storage request of the first instance.

    """
    try:
        claim = instances[0].dataVolumeClaimSpec
        storage = claim["resources"]["requests"]["storage"]
    except (IndexError, KeyError, TypeError):
        logit.warning("cannot size local repository: no storage request found")
        return {}

    if not isinstance(storage, str):
        logit.warning("cannot size local repository: storage request is not a string")
        return {}

    claim_spec = dict(
        accessModes=["ReadWriteOnce"],
        resources=dict(
            requests=dict(storage=scale_quantity(storage, REPO_SIZE_FACTOR))
        ),
    )
    return dict(volumeClaimSpec=claim_spec)


def project_repo(repos: List[PgBackrestRepo], instances: List[InstanceSet]) -> dict:
    """Return the single local repository of the clone.

    Use `repo1` of the source as is if it exists. Otherwise create a new
    `repo1` with the backup schedules of the last repository that has any.

    """
    schedules: dict = {}
    for repo in repos:
        if repo.name == LOCAL_REPO_NAME:
            return dump(repo)

        # Last one wins.
        if repo.schedules is not None:
            schedules = dict(repo.schedules)

    out: dict = {"name": LOCAL_REPO_NAME, "schedules": schedules}
    volume = local_repo_volume(instances)
    if volume:
        out["volume"] = volume
    return out


def project_backups(backups: Backups, instances: List[InstanceSet]) -> dict:
    source = backups.pgbackrest
    raw = dump(source)

    out = {key: copy.deepcopy(raw[key]) for key in COPIED_PGBACKREST_KEYS if key in raw}

    if source.global_ is not None:
        out["global"] = {
            k: v
            for k, v in source.global_.items()
            if not k.startswith(DROPPED_GLOBAL_PREFIX)
        }

    # Secrets are never referenced by the clone itself.
    if source.configuration is not None:
        configuration = [dump(_) for _ in source.configuration if _.secret is None]
        if len(configuration) > 0:
            out["configuration"] = configuration

    if source.manual is not None:
        manual = copy.deepcopy(source.manual)
        if "repoName" in manual:
            manual["repoName"] = LOCAL_REPO_NAME
        out["manual"] = manual

    out["repos"] = [project_repo(source.repos, instances)]
    return {"pgbackrest": out}


def project(source: PostgresCluster) -> dict:
    """Return the clone's `spec` without the `dataSource` section."""
    spec = project_spec_fields(source.spec)
    if source.spec.metadata is not None:
        spec["metadata"] = filter_metadata(source.spec.metadata)
    spec["backups"] = project_backups(source.spec.backups, source.spec.instances)
    spec["instances"] = project_instances(source.spec.instances)
    return spec
