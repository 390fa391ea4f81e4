"""Validate point-in-time-recovery (PITR) targets.

A PITR has the form `YYYY-MM-DD HH:MM:SS+TZ` or `YYYY-MM-DD HH:MM:SS-TZ`,
eg `2022-12-28 15:47:38+01`. This is the format pgBackRest expects for its
`--target` option.

Validation happens in two stages. The syntax check runs before we talk to the
cluster. The check against the backup catalog can only run once we fetched
the catalog from the primary database Pod.
"""

import json
import logging
import re
from datetime import UTC, datetime, timedelta, timezone
from typing import Dict, List

import pydantic

from pgclone.errors import ExternalCallFailed, InvalidInput, PitrBeforeOldestBackup
from pgclone.models import BackupInfo, BackupType

logit = logging.getLogger("pgclone")

PITR = re.compile(
    r"^(?P<year>[0-9]{4})-(?P<month>[0-9]{2})-(?P<day>[0-9]{2}) "
    r"(?P<hour>[0-9]{2}):(?P<minute>[0-9]{2}):(?P<second>[0-9]{2})"
    r"(?P<sign>[+-])(?P<tz>[0-9]{2})$"
)

# Inclusive bounds of each numeric field. Days are not checked against the
# calendar here, `resolve_utc` catches eg February 31st.
BOUNDS = dict(
    month=(1, 12),
    day=(1, 31),
    hour=(0, 23),
    minute=(0, 59),
    second=(0, 59),
    tz=(0, 12),
)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _fields(text: str) -> Dict[str, int] | None:
    match = PITR.match(text)
    if match is None:
        return None
    out = {k: int(v) for k, v in match.groupdict().items() if k != "sign"}
    out["sign"] = 1 if match["sign"] == "+" else -1
    return out


def is_syntactically_valid(text: str) -> bool:
    """Return `True` if `text` is a well formed PITR.

    This does not verify that the date exists or that it is in the past.

    """
    fields = _fields(text)
    if fields is None:
        return False

    for name, (lower, upper) in BOUNDS.items():
        if not (lower <= fields[name] <= upper):
            return False
    return True


def resolve_utc(text: str) -> datetime:
    """Return the PITR `text` as a timezone aware UTC timestamp.

    A `+01` PITR is one hour ahead of UTC, ie `10:00:00+01` is `09:00:00Z`.

    """
    fields = _fields(text)
    if fields is None or not is_syntactically_valid(text):
        raise InvalidInput(f"invalid PITR {text!r}: expected YYYY-MM-DD HH:MM:SS+TZ")

    tz = timezone(timedelta(hours=fields["sign"] * fields["tz"]))
    try:
        local = datetime(
            fields["year"],
            fields["month"],
            fields["day"],
            fields["hour"],
            fields["minute"],
            fields["second"],
            tzinfo=tz,
        )
    except ValueError as err:
        raise InvalidInput(f"invalid PITR {text!r}: {err}")
    return local.astimezone(UTC)


def to_nanoseconds(ts: datetime) -> int:
    """Return the nanoseconds between the Unix epoch and the aware `ts`."""
    delta = ts - EPOCH
    return (delta.days * 86400 + delta.seconds) * 10**9 + delta.microseconds * 1000


def is_after_oldest_full_backup(target: datetime, catalog: BackupInfo) -> bool:
    """Return `True` if `target` is after the start of any full backup.

    pgBackRest can restore to any point after a full backup by replaying the
    WAL on top of it. The restore itself performs the authoritative check.

    """
    target_ns = to_nanoseconds(target)
    for backup in catalog.backup:
        if backup.type != BackupType.FULL:
            continue

        # pgBackRest reports Unix seconds.
        if target_ns > backup.timestamp.start * 10**9:
            return True
    return False


def parse_backup_catalog(text: str) -> List[BackupInfo]:
    """Parse the output of `pgbackrest info --output=json`."""
    try:
        data = json.loads(text)
        assert isinstance(data, list)
        return [BackupInfo.model_validate(_) for _ in data]
    except (AssertionError, json.JSONDecodeError, pydantic.ValidationError) as err:
        logit.error("cannot parse backup catalog", {"reason": str(err)})
        raise ExternalCallFailed(f"invalid backup catalog: {err}")


def validate_pitr(pitr: str, catalog: List[BackupInfo]) -> datetime:
    """Return the UTC target of `pitr` if the `catalog` can restore it."""
    target = resolve_utc(pitr)
    if len(catalog) == 0:
        raise ExternalCallFailed("backup catalog is empty")

    if not is_after_oldest_full_backup(target, catalog[0]):
        raise PitrBeforeOldestBackup(
            f"PITR {pitr!r} is before the oldest full backup: cannot restore"
        )
    return target
