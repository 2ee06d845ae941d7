"""Component factory for the btrfs provisioner."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from typing import Self

import structlog
from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiClient
from safir.slack.webhook import SlackWebhookClient
from structlog.stdlib import BoundLogger

from .config import Config
from .constants import ROOT_LOGGER
from .services.builder.job import ProvisionerJobBuilder
from .services.controller import Controller
from .services.jobs import JobDispatcher
from .services.provisioner import Provisioner
from .services.storageclass import StorageClassResolver
from .storage.btrfs import BtrfsWrapper
from .storage.kubernetes.job import JobStorage
from .storage.kubernetes.node import NodeStorage
from .storage.kubernetes.pv import PersistentVolumeStorage
from .storage.kubernetes.pvc import PersistentVolumeClaimStorage
from .storage.kubernetes.storageclass import StorageClassStorage

__all__ = ["Factory"]


class Factory:
    """Build btrfs provisioner components.

    All components share one Kubernetes API client, which is closed when
    the factory is closed.

    Parameters
    ----------
    config
        Provisioner configuration.
    kubernetes_client
        Shared Kubernetes API client.
    logger
        Logger to use for messages.
    """

    @classmethod
    @asynccontextmanager
    async def standalone(cls, config: Config) -> AsyncIterator[Self]:
        """Async context manager for provisioner components.

        Intended for the command-line interface and the test suite. The
        Kubernetes client configuration must already have been loaded.

        Parameters
        ----------
        config
            Provisioner configuration.

        Yields
        ------
        Factory
            Newly-created factory. Must be used as a context manager.
        """
        logger = structlog.get_logger(ROOT_LOGGER)
        factory = cls(config, client.ApiClient(), logger)
        async with aclosing(factory):
            yield factory

    def __init__(
        self,
        config: Config,
        kubernetes_client: ApiClient,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._client = kubernetes_client
        self._logger = logger

    async def aclose(self) -> None:
        """Shut down the shared Kubernetes client."""
        await self._client.close()

    def create_btrfs_wrapper(self) -> BtrfsWrapper:
        """Create a wrapper around the btrfs tools of this node.

        Returns
        -------
        BtrfsWrapper
            Newly-created wrapper.
        """
        return BtrfsWrapper(self._config.host_fs, self._logger)

    def create_controller(self) -> Controller:
        """Create the reconciliation controller.

        Returns
        -------
        Controller
            Newly-created controller.
        """
        job_builder = ProvisionerJobBuilder(self._config)
        dispatcher = JobDispatcher(
            config=self._config,
            builder=job_builder,
            storage=JobStorage(self._client, self._logger),
            logger=self._logger,
        )
        return Controller(
            config=self._config,
            resolver=self.create_storage_class_resolver(),
            dispatcher=dispatcher,
            pvc_storage=PersistentVolumeClaimStorage(
                self._client, self._logger
            ),
            pv_storage=PersistentVolumeStorage(self._client, self._logger),
            node_storage=NodeStorage(self._client, self._logger),
            storage_class_storage=StorageClassStorage(
                self._client, self._logger
            ),
            logger=self._logger,
        )

    def create_provisioner(self, node_name: str) -> Provisioner:
        """Create the provisioner run by jobs on a node.

        Parameters
        ----------
        node_name
            Name of the node on which this process runs.

        Returns
        -------
        Provisioner
            Newly-created provisioner.
        """
        return Provisioner(
            node_name=node_name,
            config=self._config,
            btrfs=self.create_btrfs_wrapper(),
            pvc_storage=PersistentVolumeClaimStorage(
                self._client, self._logger
            ),
            pv_storage=PersistentVolumeStorage(self._client, self._logger),
            storage_class_storage=StorageClassStorage(
                self._client, self._logger
            ),
            resolver=self.create_storage_class_resolver(),
            logger=self._logger,
        )

    def create_slack_client(self) -> SlackWebhookClient | None:
        """Create a client for sending messages to Slack.

        Returns
        -------
        SlackWebhookClient or None
            Configured Slack client if a Slack webhook was configured,
            otherwise `None`.
        """
        if not self._config.slack_webhook:
            return None
        return SlackWebhookClient(
            self._config.slack_webhook.get_secret_value(),
            "btrfs provisioner",
            self._logger,
        )

    def create_storage_class_resolver(self) -> StorageClassResolver:
        """Create a resolver for storage class ownership.

        Returns
        -------
        StorageClassResolver
            Newly-created resolver.
        """
        storage = StorageClassStorage(self._client, self._logger)
        return StorageClassResolver(storage, self._logger)
