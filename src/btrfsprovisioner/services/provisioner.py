"""Provisioning, deletion, and node initialization run by provisioner jobs.

Each public method of `Provisioner` is the body of one job subcommand. It
runs on the node that owns the volume, manipulates the btrfs filesystem of
that node, and updates the Kubernetes objects describing the result.
"""

from __future__ import annotations

import random
import string

from kubernetes_asyncio.client import (
    V1LocalVolumeSource,
    V1NodeSelector,
    V1NodeSelectorRequirement,
    V1NodeSelectorTerm,
    V1ObjectMeta,
    V1ObjectReference,
    V1PersistentVolume,
    V1PersistentVolumeClaim,
    V1PersistentVolumeSpec,
    V1StorageClass,
    V1VolumeNodeAffinity,
)
from safir.datetime import current_datetime
from structlog.stdlib import BoundLogger

from ..config import Config
from ..constants import (
    CONTROLLING_NODE_LABEL,
    FINALIZER_NAME,
    NODE_HOSTNAME_LABEL,
    PROVISIONED_BY_ANNOTATION,
    PROVISIONER_NAME,
    VOLUME_NAME_SUFFIX_LENGTH,
)
from ..exceptions import (
    BtrfsCommandError,
    ControllerTimeoutError,
    InvalidObjectError,
    KubernetesError,
    MissingObjectError,
    MissingVolumeRootError,
    PartialProvisionError,
    QgroupNotFoundError,
    StorageClassExistsError,
    VolumeExistsError,
)
from ..models.domain.volume import BtrfsVolumeMetadata, to_host_path
from ..storage.btrfs import BtrfsWrapper
from ..storage.kubernetes.pv import PersistentVolumeStorage
from ..storage.kubernetes.pvc import PersistentVolumeClaimStorage
from ..storage.kubernetes.storageclass import StorageClassStorage
from ..timeout import Timeout
from ..units import to_bytes
from .storageclass import StorageClassResolver

__all__ = ["Provisioner"]

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


class Provisioner:
    """Create and destroy btrfs-backed volumes on one node.

    Parameters
    ----------
    node_name
        Name of the node on which this process runs.
    config
        Provisioner configuration.
    btrfs
        Wrapper around the btrfs tools of this node.
    pvc_storage
        Storage layer for persistent volume claims.
    pv_storage
        Storage layer for persistent volumes.
    storage_class_storage
        Storage layer for storage classes.
    resolver
        Resolver for storage class ownership.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        node_name: str,
        config: Config,
        btrfs: BtrfsWrapper,
        pvc_storage: PersistentVolumeClaimStorage,
        pv_storage: PersistentVolumeStorage,
        storage_class_storage: StorageClassStorage,
        resolver: StorageClassResolver,
        logger: BoundLogger,
    ) -> None:
        self._node_name = node_name
        self._config = config
        self._btrfs = btrfs
        self._pvc_storage = pvc_storage
        self._pv_storage = pv_storage
        self._storage_class_storage = storage_class_storage
        self._resolver = resolver
        self._logger = logger.bind(node=node_name)

    async def provision(self, namespace: str, name: str) -> str:
        """Provision a volume for a persistent volume claim.

        Creates a quota-limited subvolume sized by the storage request of
        the claim and a persistent volume bound to the claim and pinned to
        this node. Nothing is rolled back if a step after the creation of
        the subvolume fails.

        Parameters
        ----------
        namespace
            Namespace of the claim. The empty string means ``default``.
        name
            Name of the claim.

        Returns
        -------
        str
            Name of the new persistent volume.

        Raises
        ------
        BtrfsCommandError
            Raised if the subvolume could not be created.
        ControllerTimeoutError
            Raised if Kubernetes did not answer in time before anything was
            created on disk.
        InvalidObjectError
            Raised if the claim has no storage class or storage request.
        InvalidQuantityError
            Raised if the storage request cannot be parsed.
        KubernetesError
            Raised for exceptions from the Kubernetes API server before
            anything was created on disk.
        MissingObjectError
            Raised if the claim does not exist.
        MissingVolumeRootError
            Raised if the volume root directory does not exist.
        PartialProvisionError
            Raised if a step failed after the subvolume was created.
        VolumeExistsError
            Raised if the subvolume path already exists.
        """
        namespace = namespace or "default"
        logger = self._logger.bind(claim=f"{namespace}/{name}")
        timeout = Timeout("Provision volume", self._config.kubernetes_timeout)
        claim = await self._pvc_storage.read(name, namespace, timeout)
        if not claim:
            msg = "Persistent volume claim not found"
            raise MissingObjectError(
                msg,
                kind="PersistentVolumeClaim",
                namespace=namespace,
                name=name,
            )
        storage_class = claim.spec.storage_class_name if claim.spec else None
        request = self._get_storage_request(claim)
        if not storage_class or not request:
            msg = "Claim has no storage class or storage request"
            raise InvalidObjectError(
                msg,
                kind="PersistentVolumeClaim",
                namespace=namespace,
                name=name,
            )
        size = to_bytes(request)

        logger.info("Provisioning claim", size=size)
        volume_name = await self._generate_volume_name(
            namespace, name, timeout
        )
        metadata = self._build_volume_metadata(volume_name)
        self._check_volumes_root()
        if metadata.host_path.exists():
            raise VolumeExistsError(metadata.path)

        logger.info("Creating subvolume", path=str(metadata.path))
        self._btrfs.subvolume_create(metadata.path)
        try:
            self._btrfs.quota_enable(metadata.path)
            logger.info("Setting quota limit", path=str(metadata.path))
            self._btrfs.qgroup_limit(size, metadata.path)
            self._btrfs.quota_rescan_wait(metadata.path)

            # The rescan may take arbitrarily long, so time the Kubernetes
            # call separately.
            timeout = Timeout(
                "Create persistent volume", self._config.kubernetes_timeout
            )
            body = self._build_volume(claim, metadata, storage_class, request)
            await self._pv_storage.create(body, timeout)
        except (
            BtrfsCommandError,
            ControllerTimeoutError,
            KubernetesError,
        ) as e:
            raise PartialProvisionError(metadata.path, str(e)) from e
        logger.info("Created volume", volume=volume_name)
        return volume_name

    async def delete(self, volume_name: str) -> None:
        """Delete or archive the subvolume of a persistent volume.

        Once the subvolume has been destroyed or archived, the finalizer of
        this provisioner is removed from the persistent volume so that
        Kubernetes can finish deleting it. If destroying the subvolume
        fails, the finalizer stays in place and deletion can be retried.

        Parameters
        ----------
        volume_name
            Name of the persistent volume.

        Raises
        ------
        BtrfsCommandError
            Raised if the subvolume could not be removed or archived.
        ControllerTimeoutError
            Raised if Kubernetes did not answer in time.
        InvalidObjectError
            Raised if the volume lacks our finalizer or a storage class, or
            if its storage class is not provisioned by us.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        MissingObjectError
            Raised if the volume or its subvolume does not exist.
        """
        logger = self._logger.bind(volume=volume_name)
        timeout = Timeout("Delete volume", self._config.kubernetes_timeout)
        volume = await self._pv_storage.read(volume_name, timeout)
        if not volume:
            msg = "Persistent volume not found"
            raise MissingObjectError(
                msg, kind="PersistentVolume", name=volume_name
            )
        finalizers = volume.metadata.finalizers or []
        if FINALIZER_NAME not in finalizers:
            msg = f"Persistent volume does not have finalizer {FINALIZER_NAME}"
            raise InvalidObjectError(
                msg, kind="PersistentVolume", name=volume_name
            )
        index = finalizers.index(FINALIZER_NAME)
        storage_class = volume.spec.storage_class_name if volume.spec else None
        if not storage_class:
            msg = "Persistent volume has no storage class"
            raise InvalidObjectError(
                msg, kind="PersistentVolume", name=volume_name
            )
        if not await self._resolver.is_controlling_name(
            storage_class, timeout
        ):
            msg = f"Storage class {storage_class} is not provisioned by us"
            raise InvalidObjectError(
                msg, kind="PersistentVolume", name=volume_name
            )

        metadata = self._build_volume_metadata(volume_name)
        if not metadata.host_path.exists():
            msg = f"Subvolume {metadata.path} does not exist"
            raise MissingObjectError(
                msg, kind="PersistentVolume", name=volume_name
            )

        try:
            qgroup = self._btrfs.get_qgroup(metadata.path)
        except (BtrfsCommandError, QgroupNotFoundError) as e:
            msg = "Cannot find qgroup, not destroying it"
            logger.warning(msg, error=str(e))
        else:
            logger.info("Destroying qgroup", qgroup=qgroup)
            self._btrfs.qgroup_destroy(qgroup, metadata.path)

        if self._config.archive_on_delete:
            timestamp = int(current_datetime().timestamp())
            target = metadata.archive_path(timestamp)
            logger.info("Archiving subvolume", target=str(target))
            self._btrfs.move(metadata.path, target)
        else:
            logger.info("Deleting subvolume", path=str(metadata.path))
            self._btrfs.subvolume_delete(metadata.path)

        timeout = Timeout("Remove finalizer", self._config.kubernetes_timeout)
        await self._pv_storage.remove_finalizer(
            volume_name, index, FINALIZER_NAME, timeout
        )
        logger.info("Deleted volume")

    async def initialize_node(self) -> None:
        """Prepare this node for serving volumes.

        Checks that the volume root exists and, if per-node storage classes
        are enabled, creates the storage class served by this node.

        Raises
        ------
        ControllerTimeoutError
            Raised if Kubernetes did not answer in time.
        KubernetesError
            Raised for exceptions from the Kubernetes API server.
        MissingVolumeRootError
            Raised if the volume root directory does not exist.
        StorageClassExistsError
            Raised if a storage class for this node already exists.
        """
        self._check_volumes_root()
        if not self._config.storage_class_per_node_enabled:
            return

        timeout = Timeout("Initialize node", self._config.kubernetes_timeout)
        selector = f"{CONTROLLING_NODE_LABEL}={self._node_name}"
        existing = await self._storage_class_storage.list(
            timeout, label_selector=selector, limit=1
        )
        if existing:
            name = existing[0].metadata.name
            raise StorageClassExistsError(self._node_name, name)

        name = self._config.storage_class_name_for_node(self._node_name)
        self._logger.info("Creating storage class", storage_class=name)
        storage_class = V1StorageClass(
            metadata=V1ObjectMeta(
                name=name, labels={CONTROLLING_NODE_LABEL: self._node_name}
            ),
            provisioner=PROVISIONER_NAME,
            allow_volume_expansion=False,
        )
        await self._storage_class_storage.create(storage_class, timeout)

    def _build_volume(
        self,
        claim: V1PersistentVolumeClaim,
        metadata: BtrfsVolumeMetadata,
        storage_class: str,
        request: str,
    ) -> V1PersistentVolume:
        """Construct the persistent volume for a provisioned claim."""
        requirement = V1NodeSelectorRequirement(
            key=NODE_HOSTNAME_LABEL, operator="In", values=[self._node_name]
        )
        affinity = V1VolumeNodeAffinity(
            required=V1NodeSelector(
                node_selector_terms=[
                    V1NodeSelectorTerm(match_expressions=[requirement])
                ]
            )
        )
        claim_ref = V1ObjectReference(
            api_version="v1",
            kind="PersistentVolumeClaim",
            namespace=claim.metadata.namespace,
            name=claim.metadata.name,
            uid=claim.metadata.uid,
            resource_version=claim.metadata.resource_version,
        )
        return V1PersistentVolume(
            api_version="v1",
            kind="PersistentVolume",
            metadata=V1ObjectMeta(
                name=metadata.name,
                annotations={PROVISIONED_BY_ANNOTATION: PROVISIONER_NAME},
                finalizers=[FINALIZER_NAME],
            ),
            spec=V1PersistentVolumeSpec(
                access_modes=["ReadWriteOnce"],
                capacity={"storage": request},
                claim_ref=claim_ref,
                local=V1LocalVolumeSource(path=str(metadata.path)),
                node_affinity=affinity,
                storage_class_name=storage_class,
            ),
        )

    def _build_volume_metadata(self, name: str) -> BtrfsVolumeMetadata:
        return BtrfsVolumeMetadata.from_volume_name(
            name, self._config.volumes_dir, self._config.host_fs
        )

    def _check_volumes_root(self) -> None:
        """Raise `MissingVolumeRootError` if the volume root is missing."""
        root = to_host_path(self._config.volumes_dir, self._config.host_fs)
        if not root.is_dir():
            raise MissingVolumeRootError(self._config.volumes_dir)

    async def _generate_volume_name(
        self, namespace: str, claim_name: str, timeout: Timeout
    ) -> str:
        """Pick a persistent volume name not used by any existing volume."""
        while True:
            suffix = "".join(
                random.choices(_SUFFIX_ALPHABET, k=VOLUME_NAME_SUFFIX_LENGTH)
            )
            name = f"{namespace}-{claim_name}-{suffix}"
            if not await self._pv_storage.read(name, timeout):
                return name

    def _get_storage_request(
        self, claim: V1PersistentVolumeClaim
    ) -> str | None:
        if not claim.spec or not claim.spec.resources:
            return None
        requests = claim.spec.resources.requests or {}
        return requests.get("storage")
