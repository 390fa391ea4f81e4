"""Run commands inside Pods.

The clone core only depends on the `PodExecutor` signature. The default
implementation shells out to `kubectl exec`.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Tuple

logit = logging.getLogger("pgclone")

# async (namespace, pod, container, command) -> (stdout, stderr, err)
PodExecutor = Callable[[str, str, str, List[str]], Awaitable[Tuple[str, str, bool]]]


def kubectl_command(
    kubeconfig: Path | None,
    context: str,
    namespace: str,
    pod: str,
    container: str,
    command: List[str],
) -> List[str]:
    """Return the full `kubectl exec` command line."""
    cmd = ["kubectl"]
    if kubeconfig is not None:
        cmd.extend(["--kubeconfig", str(kubeconfig)])
    if context:
        cmd.extend(["--context", context])
    cmd.extend(["exec", "-n", namespace, pod, "-c", container, "--"])
    return cmd + command


def kubectl_executor(kubeconfig: Path | None, context: str) -> PodExecutor:
    """Return a `PodExecutor` that uses the local `kubectl` binary."""

    async def run(
        namespace: str, pod: str, container: str, command: List[str]
    ) -> Tuple[str, str, bool]:
        cmd = kubectl_command(kubeconfig, context, namespace, pod, container, command)
        logit.debug(f"Running: {str.join(' ', cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as err:
            logit.error(f"cannot run kubectl: {err}")
            return ("", str(err), True)

        out, errout = stdout.decode(), stderr.decode()
        if proc.returncode != 0:
            logit.error(
                f"command failed in {namespace}/{pod}/{container}",
                {"returncode": proc.returncode, "stderr": errout},
            )
            return (out, errout, True)
        return (out, errout, False)

    return run


def pgbackrest_info_command(output: str = "json", repo_num: str = "") -> List[str]:
    """Return the command that prints the pgBackRest backup catalog.

    An empty `repo_num` queries all repositories.

    """
    cmd = f"pgbackrest info --output={output}"
    if repo_num:
        cmd += f" --repo={repo_num}"
    return ["bash", "-ceu", "--", cmd]
