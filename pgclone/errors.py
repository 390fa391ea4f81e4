"""Exceptions raised by the clone core.

The K8s transport in `pgclone.k8s` never raises. It returns error flags that
`pgclone.store` converts into the exceptions below.
"""


class CloneError(Exception):
    """Base class of all errors the clone core reports to its caller.

    Args:
        msg (str): Optional message for the exception.
    """

    def __init__(self, msg=""):
        super().__init__(msg)
        self._msg = msg


class InvalidInput(CloneError):
    """Malformed user input, eg a PITR or a replica count out of range."""


class InvalidRepository(CloneError):
    """The requested pgBackRest repository does not exist in the source."""


class PitrBeforeOldestBackup(CloneError):
    """The PITR target precedes every full backup in the catalog."""


class DependencyNotFound(CloneError):
    """A ConfigMap or Secret referenced by the source cluster does not exist."""


class ConflictNotOverwritable(CloneError):
    """Target object already exists and overwriting was not requested."""


class ExternalCallFailed(CloneError):
    """A K8s API call or a remote command failed."""


class NotFound(ExternalCallFailed):
    """K8s reported 404 for the resource."""


class AlreadyExists(ExternalCallFailed):
    """K8s reported 409 for the resource."""
