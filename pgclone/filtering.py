"""Strip ownership and bookkeeping markers from metadata.

A clone must not be adopted by the Helm release that owns its source, and it
must not inherit stale restart markers or `kubectl apply` history.
"""

from typing import Dict

from pgclone.defaults import (
    DROPPED_ANNOTATIONS,
    HELM_CHART_LABEL,
    HELM_MANAGED_BY,
    HELM_RELEASE_ANNOTATIONS,
)
from pgclone.models import K8sMetadata


def _is_helm_managed_by(key: str, value: str) -> bool:
    return (key, value) == HELM_MANAGED_BY


def filter_labels(labels: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of `labels` without Helm ownership markers."""
    out = {}
    for k, v in labels.items():
        if _is_helm_managed_by(k, v) or k == HELM_CHART_LABEL:
            continue
        out[k] = v
    return out


def filter_annotations(annotations: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of `annotations` without Helm, restart and apply markers."""
    out = {}
    for k, v in annotations.items():
        if _is_helm_managed_by(k, v):
            continue
        if k in HELM_RELEASE_ANNOTATIONS or k in DROPPED_ANNOTATIONS:
            continue
        out[k] = v
    return out


def filter_metadata(meta: K8sMetadata) -> Dict[str, Dict[str, str]]:
    return {
        "labels": filter_labels(meta.labels),
        "annotations": filter_annotations(meta.annotations),
    }
