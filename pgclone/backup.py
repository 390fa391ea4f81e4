import logging
from typing import List

from pgclone.defaults import DATABASE_CONTAINER, primary_pod_selector
from pgclone.errors import ExternalCallFailed, InvalidInput
from pgclone.executor import PodExecutor, pgbackrest_info_command
from pgclone.models import BackupInfo
from pgclone.pitr import parse_backup_catalog
from pgclone.store import ObjectStore

logit = logging.getLogger("pgclone")

# Report formats of `pgbackrest info`.
OUTPUT_FORMATS = ("text", "json")


def repo_number(repo_name: str) -> str:
    """Return the pgBackRest index of `repo_name`, eg "2" for "repo2"."""
    return repo_name.removeprefix("repo")


async def find_primary_pod(store: ObjectStore, namespace: str, cluster: str) -> str:
    """Return the name of the primary database Pod of `cluster`."""
    pods = await store.list("Pod", namespace, primary_pod_selector(cluster))
    if len(pods) != 1:
        raise ExternalCallFailed(
            f"expected exactly one primary Pod for {namespace}/{cluster} "
            f"but found {len(pods)}"
        )
    return pods[0]["metadata"]["name"]


async def fetch_backup_catalog(
    store: ObjectStore,
    executor: PodExecutor,
    namespace: str,
    cluster: str,
    repo_name: str,
) -> List[BackupInfo]:
    """Return the pgBackRest backup catalog of `cluster`.

    The catalog comes from `pgbackrest info` in the primary database Pod. An
    empty `repo_name` returns the catalog of all repositories.

    """
    pod = await find_primary_pod(store, namespace, cluster)
    cmd = pgbackrest_info_command("json", repo_number(repo_name))

    stdout, stderr, err = await executor(namespace, pod, DATABASE_CONTAINER, cmd)
    if err or stderr != "":
        logit.error("cannot fetch backup catalog", {"pod": pod, "stderr": stderr})
        raise ExternalCallFailed(
            f"pgbackrest info failed in {namespace}/{pod}: {stderr.strip()}"
        )

    catalog = parse_backup_catalog(stdout)
    logit.info(f"fetched backup catalog of {namespace}/{cluster}")
    return catalog


async def show_backups(
    store: ObjectStore,
    executor: PodExecutor,
    namespace: str,
    cluster: str,
    repo_name: str,
    output: str = "text",
) -> str:
    """Return the `pgbackrest info` report of `cluster` as `output` (text or json).

    Unlike `fetch_backup_catalog` this only fails if the command itself
    fails. Anything pgBackRest writes to stderr is logged as a warning.

    """
    if output not in OUTPUT_FORMATS:
        raise InvalidInput(f"unsupported output format {output!r}")

    pod = await find_primary_pod(store, namespace, cluster)
    cmd = pgbackrest_info_command(output, repo_number(repo_name))

    stdout, stderr, err = await executor(namespace, pod, DATABASE_CONTAINER, cmd)
    if err:
        raise ExternalCallFailed(
            f"pgbackrest info failed in {namespace}/{pod}: {stderr.strip()}"
        )
    if stderr != "":
        logit.warning("pgbackrest info reported errors", {"pod": pod, "stderr": stderr})
    return stdout
