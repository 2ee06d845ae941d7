"""Identity of jobs dispatched by the controller.

Every job the controller dispatches carries a job type and the UID of the
object it acts on as labels. The same labels are used as a selector to find
jobs already in flight for that object, which is how duplicate dispatch is
prevented.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from ...constants import JOB_TARGET_UID_LABEL, JOB_TYPE_LABEL
from ...exceptions import InvalidJobLabelsError

__all__ = [
    "DeleteJob",
    "InitializeNodeJob",
    "ProvisionJob",
    "ProvisionerJob",
    "ProvisionerJobType",
    "job_from_labels",
    "job_to_label_selector",
    "job_to_labels",
]


class ProvisionerJobType(StrEnum):
    """Kind of work a dispatched job performs."""

    PROVISION = "provision"
    DELETE = "delete"
    INITIALIZE_NODE = "initialize-node"


@dataclass(frozen=True)
class ProvisionJob:
    """Provision a volume for a persistent volume claim."""

    claim_uid: str
    """UID of the claim."""


@dataclass(frozen=True)
class DeleteJob:
    """Delete or archive the subvolume of a persistent volume."""

    volume_uid: str
    """UID of the persistent volume."""


@dataclass(frozen=True)
class InitializeNodeJob:
    """Prepare a node for serving volumes."""

    node_uid: str
    """UID of the node."""


type ProvisionerJob = ProvisionJob | DeleteJob | InitializeNodeJob


def job_to_labels(job: ProvisionerJob) -> dict[str, str]:
    """Render a job as the labels of its Kubernetes ``Job`` object.

    Parameters
    ----------
    job
        Job to render.

    Returns
    -------
    dict of str
        Job type and target UID labels.
    """
    match job:
        case ProvisionJob(claim_uid=uid):
            job_type = ProvisionerJobType.PROVISION
        case DeleteJob(volume_uid=uid):
            job_type = ProvisionerJobType.DELETE
        case InitializeNodeJob(node_uid=uid):
            job_type = ProvisionerJobType.INITIALIZE_NODE
        case _:
            raise TypeError(f"Unknown provisioner job {job!r}")
    return {JOB_TYPE_LABEL: job_type.value, JOB_TARGET_UID_LABEL: uid}


def job_to_label_selector(job: ProvisionerJob) -> str:
    """Render a job as a selector matching jobs with the same identity.

    Parameters
    ----------
    job
        Job to render.

    Returns
    -------
    str
        Conjunctive label selector.
    """
    labels = job_to_labels(job)
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def job_from_labels(labels: dict[str, str] | None) -> ProvisionerJob:
    """Recover a job from the labels of its Kubernetes ``Job`` object.

    Parameters
    ----------
    labels
        Labels of the ``Job`` object.

    Returns
    -------
    ProvisionerJob
        Job described by the labels.

    Raises
    ------
    InvalidJobLabelsError
        Raised if a label is missing or the job type is not known.
    """
    labels = labels or {}
    if JOB_TYPE_LABEL not in labels:
        raise InvalidJobLabelsError(f"Job has no {JOB_TYPE_LABEL} label")
    if JOB_TARGET_UID_LABEL not in labels:
        msg = f"Job has no {JOB_TARGET_UID_LABEL} label"
        raise InvalidJobLabelsError(msg)
    try:
        job_type = ProvisionerJobType(labels[JOB_TYPE_LABEL])
    except ValueError as e:
        msg = f"Unknown job type {labels[JOB_TYPE_LABEL]}"
        raise InvalidJobLabelsError(msg) from e
    uid = labels[JOB_TARGET_UID_LABEL]
    match job_type:
        case ProvisionerJobType.PROVISION:
            return ProvisionJob(claim_uid=uid)
        case ProvisionerJobType.DELETE:
            return DeleteJob(volume_uid=uid)
        case ProvisionerJobType.INITIALIZE_NODE:
            return InitializeNodeJob(node_uid=uid)
