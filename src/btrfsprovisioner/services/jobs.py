"""Dispatch of provisioner jobs with duplicate suppression."""

from __future__ import annotations

from dataclasses import dataclass

from kubernetes_asyncio.client import V1Job
from structlog.stdlib import BoundLogger

from ..config import Config
from ..constants import JOB_TARGET_UID_LABEL, JOB_TYPE_LABEL
from ..exceptions import KubernetesError
from ..models.domain.jobs import (
    ProvisionerJob,
    job_to_label_selector,
    job_to_labels,
)
from ..storage.kubernetes.job import JobStorage
from ..timeout import Timeout
from .builder.job import ProvisionerJobBuilder

__all__ = ["DispatchResult", "JobDispatcher"]


@dataclass
class DispatchResult:
    """Outcome of dispatching a job."""

    created: bool
    """Whether a new job was created."""

    job: V1Job | None
    """The new job, or the job already in flight if one was found."""


class JobDispatcher:
    """Create provisioner jobs unless an equivalent job already exists.

    Jobs are identified by their labels. Before creating a job, the
    namespace is searched for a job with the same labels. This check is not
    atomic with the creation, but dispatching is only done by the single
    controller consumer, and the jobs themselves are idempotent enough that
    an occasional duplicate does no harm.

    Parameters
    ----------
    config
        Provisioner configuration.
    builder
        Builder for job objects.
    storage
        Storage layer for jobs.
    logger
        Logger to use.
    """

    def __init__(
        self,
        config: Config,
        builder: ProvisionerJobBuilder,
        storage: JobStorage,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._builder = builder
        self._storage = storage
        self._logger = logger

    async def dispatch(
        self,
        job: ProvisionerJob,
        *,
        node_name: str,
        name: str,
        args: list[str],
        timeout: Timeout,
    ) -> DispatchResult:
        """Create a job if no job with the same identity exists.

        Parameters
        ----------
        job
            Identity of the job.
        node_name
            Node on which the job must run.
        name
            Prefix of the generated job name.
        args
            Provisioner subcommand and its arguments.
        timeout
            Timeout on operation.

        Returns
        -------
        DispatchResult
            Whether the job was created, and the created or existing job.

        Raises
        ------
        ControllerTimeoutError
            Raised if the timeout expired.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        """
        namespace = self._config.namespace
        labels = job_to_labels(job)
        logger = self._logger.bind(
            node=node_name,
            job_type=labels[JOB_TYPE_LABEL],
            target_uid=labels[JOB_TARGET_UID_LABEL],
        )
        selector = job_to_label_selector(job)
        existing = await self._storage.list(
            namespace, timeout, label_selector=selector, limit=1
        )
        if existing:
            logger.debug("Job already exists", job=existing[0].metadata.name)
            return DispatchResult(created=False, job=existing[0])

        body = self._builder.build(
            job, node_name=node_name, name=name, args=args
        )
        try:
            created = await self._storage.create(namespace, body, timeout)
        except KubernetesError as e:
            if e.status == 409:
                logger.debug("Job created concurrently, not creating")
                return DispatchResult(created=False, job=None)
            raise
        logger.info("Created job", job=created.metadata.name, args=args)
        return DispatchResult(created=True, job=created)
