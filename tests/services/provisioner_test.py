"""Tests for the work done by provisioner jobs."""

from __future__ import annotations

import random
import re
from pathlib import Path
from unittest.mock import patch

import pytest
from kubernetes_asyncio.client import (
    ApiException,
    V1ObjectMeta,
    V1PersistentVolume,
    V1PersistentVolumeSpec,
)

from btrfsprovisioner.config import Config
from btrfsprovisioner.constants import (
    CONTROLLING_NODE_LABEL,
    FINALIZER_NAME,
    PROVISIONED_BY_ANNOTATION,
    PROVISIONER_NAME,
)
from btrfsprovisioner.exceptions import (
    BtrfsCommandError,
    InvalidObjectError,
    InvalidUnitError,
    MissingObjectError,
    MissingVolumeRootError,
    PartialProvisionError,
    StorageClassExistsError,
    VolumeExistsError,
)
from btrfsprovisioner.factory import Factory

from ..support.btrfs import MockBtrfs
from ..support.kubernetes import MockKubernetesApi
from ..support.objects import create_claim, create_storage_class


@pytest.mark.asyncio
async def test_provision(
    factory: Factory,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    claim = await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")

    name = await provisioner.provision("default", "data")

    assert re.match(r"^default-data-[a-z0-9]{5}$", name)
    assert (host_fs / "volumes" / name).is_dir()
    path = Path("/volumes") / name
    assert mock_btrfs.limits[path] == 5368709120
    assert mock_btrfs.quota_enabled

    volumes = mock_kubernetes.get_all_objects_for_test("PersistentVolume")
    assert len(volumes) == 1
    volume = volumes[0]
    assert volume.metadata.name == name
    assert volume.metadata.annotations == {
        PROVISIONED_BY_ANNOTATION: PROVISIONER_NAME
    }
    assert volume.metadata.finalizers == [FINALIZER_NAME]
    assert volume.spec.access_modes == ["ReadWriteOnce"]
    assert volume.spec.capacity == {"storage": "5Gi"}
    assert volume.spec.local.path == str(path)
    assert volume.spec.storage_class_name == "ours"
    claim_ref = volume.spec.claim_ref
    assert claim_ref.namespace == "default"
    assert claim_ref.name == "data"
    assert claim_ref.uid == claim.metadata.uid
    assert claim_ref.resource_version == claim.metadata.resource_version
    terms = volume.spec.node_affinity.required.node_selector_terms
    requirement = terms[0].match_expressions[0]
    assert requirement.key == "kubernetes.io/hostname"
    assert requirement.operator == "In"
    assert requirement.values == ["n1"]


@pytest.mark.asyncio
async def test_provision_default_namespace(
    factory: Factory,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data", request="1Mi")
    provisioner = factory.create_provisioner("n1")

    name = await provisioner.provision("", "data")

    assert name.startswith("default-data-")
    assert mock_btrfs.limits[Path("/volumes") / name] == 1048576


@pytest.mark.asyncio
async def test_provision_name_collision(
    factory: Factory,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    existing = V1PersistentVolume(
        metadata=V1ObjectMeta(name="default-data-aaaaa"),
        spec=V1PersistentVolumeSpec(storage_class_name="ours"),
    )
    await mock_kubernetes.create_persistent_volume(
        existing, _request_timeout=5
    )
    provisioner = factory.create_provisioner("n1")

    suffixes = [list("aaaaa"), list("bbbbb")]
    with patch.object(random, "choices", side_effect=suffixes):
        name = await provisioner.provision("default", "data")

    assert name == "default-data-bbbbb"


@pytest.mark.asyncio
async def test_provision_errors(
    factory: Factory,
    config: Config,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    provisioner = factory.create_provisioner("n1")

    with pytest.raises(MissingObjectError):
        await provisioner.provision("default", "data")

    await create_claim(mock_kubernetes, "default", "nosize", request=None)
    with pytest.raises(InvalidObjectError):
        await provisioner.provision("default", "nosize")
    await create_claim(
        mock_kubernetes, "default", "noclass", storage_class=None
    )
    with pytest.raises(InvalidObjectError):
        await provisioner.provision("default", "noclass")
    await create_claim(mock_kubernetes, "default", "badsize", request="5Gb")
    with pytest.raises(InvalidUnitError):
        await provisioner.provision("default", "badsize")

    # Nothing was run before the claim was validated.
    assert mock_btrfs.commands == []
    assert mock_kubernetes.get_all_objects_for_test("PersistentVolume") == []

    await create_claim(mock_kubernetes, "default", "data")
    with patch.object(random, "choices", return_value=list("aaaaa")):
        mock_btrfs.add_subvolume_for_test(Path("/volumes/default-data-aaaaa"))
        with pytest.raises(VolumeExistsError):
            await provisioner.provision("default", "data")

    (host_fs / "volumes" / "default-data-aaaaa").rmdir()
    (host_fs / "volumes").rmdir()
    with pytest.raises(MissingVolumeRootError) as excinfo:
        await provisioner.provision("default", "data")
    assert excinfo.value.path == config.volumes_dir
    assert mock_btrfs.commands == []


@pytest.mark.asyncio
async def test_provision_partial(
    factory: Factory,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")

    mock_btrfs.fail_command_for_test("btrfs", "qgroup", "limit")
    with patch.object(random, "choices", return_value=list("aaaaa")):
        with pytest.raises(PartialProvisionError) as excinfo:
            await provisioner.provision("default", "data")
    assert excinfo.value.path == Path("/volumes/default-data-aaaaa")
    assert "Injected failure" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, BtrfsCommandError)

    # The subvolume is left behind and no volume is created.
    assert (host_fs / "volumes" / "default-data-aaaaa").is_dir()
    assert mock_kubernetes.get_all_objects_for_test("PersistentVolume") == []


@pytest.mark.asyncio
async def test_provision_create_failure(
    factory: Factory,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")

    # Nothing was left on disk, so the error is not a partial failure.
    mock_btrfs.fail_command_for_test("btrfs", "subvolume", "create")
    with pytest.raises(BtrfsCommandError):
        await provisioner.provision("default", "data")
    assert list((host_fs / "volumes").iterdir()) == []
    assert mock_btrfs.commands[-1][:3] == ["btrfs", "subvolume", "create"]
    assert mock_kubernetes.get_all_objects_for_test("PersistentVolume") == []


@pytest.mark.asyncio
async def test_provision_volume_create_failure(
    factory: Factory,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")

    def callback(method: str, *args: object) -> None:
        if method == "create_persistent_volume":
            raise ApiException(status=500, reason="Internal error")

    mock_kubernetes.error_callback = callback
    with patch.object(random, "choices", return_value=list("aaaaa")):
        with pytest.raises(PartialProvisionError):
            await provisioner.provision("default", "data")
    path = Path("/volumes/default-data-aaaaa")
    assert mock_btrfs.limits[path] == 5368709120


@pytest.mark.asyncio
async def test_delete(
    factory: Factory,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")
    name = await provisioner.provision("default", "data")
    await mock_kubernetes.delete_persistent_volume(name)
    mock_btrfs.commands = []

    await provisioner.delete(name)

    path = f"/volumes/{name}"
    assert mock_btrfs.commands == [
        ["btrfs", "qgroup", "show", "-pcref", path],
        ["btrfs", "qgroup", "destroy", "0/257", path],
        ["btrfs", "subvolume", "delete", "--commit-after", path],
    ]
    assert not (host_fs / "volumes" / name).exists()
    assert mock_kubernetes.get_all_objects_for_test("PersistentVolume") == []

    with pytest.raises(MissingObjectError):
        await provisioner.delete(name)


@pytest.mark.asyncio
async def test_delete_archive(
    factory: Factory,
    config: Config,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    config.archive_on_delete = True
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")
    name = await provisioner.provision("default", "data")
    await mock_kubernetes.delete_persistent_volume(name)

    await provisioner.delete(name)

    assert not (host_fs / "volumes" / name).exists()
    archived = [p.name for p in (host_fs / "volumes").iterdir()]
    assert len(archived) == 1
    assert re.match(rf"^_archive-\d+-{name}$", archived[0])
    assert mock_kubernetes.get_all_objects_for_test("PersistentVolume") == []


@pytest.mark.asyncio
async def test_delete_failure(
    factory: Factory,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")
    name = await provisioner.provision("default", "data")
    await mock_kubernetes.delete_persistent_volume(name)

    # The finalizer stays if the subvolume cannot be removed.
    mock_btrfs.fail_command_for_test("btrfs", "subvolume", "delete")
    with pytest.raises(BtrfsCommandError):
        await provisioner.delete(name)
    volume = await mock_kubernetes.read_persistent_volume(
        name, _request_timeout=5
    )
    assert volume.metadata.finalizers == [FINALIZER_NAME]
    assert (host_fs / "volumes" / name).is_dir()


@pytest.mark.asyncio
async def test_delete_archive_failure(
    factory: Factory,
    config: Config,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    config.archive_on_delete = True
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")
    name = await provisioner.provision("default", "data")
    await mock_kubernetes.delete_persistent_volume(name)

    # The finalizer stays if the subvolume cannot be archived.
    mock_btrfs.fail_command_for_test("mv")
    with pytest.raises(BtrfsCommandError):
        await provisioner.delete(name)
    volume = await mock_kubernetes.read_persistent_volume(
        name, _request_timeout=5
    )
    assert volume.metadata.finalizers == [FINALIZER_NAME]
    assert [p.name for p in (host_fs / "volumes").iterdir()] == [name]


@pytest.mark.asyncio
async def test_delete_missing_qgroup(
    factory: Factory,
    host_fs: Path,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_claim(mock_kubernetes, "default", "data")
    provisioner = factory.create_provisioner("n1")
    name = await provisioner.provision("default", "data")
    await mock_kubernetes.delete_persistent_volume(name)

    # Failing to find the qgroup does not prevent deletion.
    mock_btrfs.fail_command_for_test("btrfs", "qgroup", "show")
    await provisioner.delete(name)
    destroy = ["btrfs", "qgroup", "destroy"]
    destroyed = [c for c in mock_btrfs.commands if c[:3] == destroy]
    assert destroyed == []
    assert not (host_fs / "volumes" / name).exists()
    assert mock_kubernetes.get_all_objects_for_test("PersistentVolume") == []


@pytest.mark.asyncio
async def test_delete_invalid(
    factory: Factory,
    mock_btrfs: MockBtrfs,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_storage_class(
        mock_kubernetes, "theirs", None, provisioner="example.com/other"
    )
    provisioner = factory.create_provisioner("n1")

    with pytest.raises(MissingObjectError):
        await provisioner.delete("default-data-aaaaa")

    volumes = {
        "no-finalizer": V1PersistentVolume(
            metadata=V1ObjectMeta(name="no-finalizer"),
            spec=V1PersistentVolumeSpec(storage_class_name="ours"),
        ),
        "no-class": V1PersistentVolume(
            metadata=V1ObjectMeta(
                name="no-class", finalizers=[FINALIZER_NAME]
            ),
            spec=V1PersistentVolumeSpec(),
        ),
        "other-class": V1PersistentVolume(
            metadata=V1ObjectMeta(
                name="other-class", finalizers=[FINALIZER_NAME]
            ),
            spec=V1PersistentVolumeSpec(storage_class_name="theirs"),
        ),
    }
    for name, volume in volumes.items():
        await mock_kubernetes.create_persistent_volume(
            volume, _request_timeout=5
        )
        with pytest.raises(InvalidObjectError):
            await provisioner.delete(name)

    # Subvolume missing on disk.
    volume = V1PersistentVolume(
        metadata=V1ObjectMeta(name="gone", finalizers=[FINALIZER_NAME]),
        spec=V1PersistentVolumeSpec(storage_class_name="ours"),
    )
    await mock_kubernetes.create_persistent_volume(volume, _request_timeout=5)
    with pytest.raises(MissingObjectError):
        await provisioner.delete("gone")
    assert mock_btrfs.commands == []


@pytest.mark.asyncio
async def test_initialize_node(
    factory: Factory,
    config: Config,
    host_fs: Path,
    mock_kubernetes: MockKubernetesApi,
) -> None:
    provisioner = factory.create_provisioner("n1")

    await provisioner.initialize_node()

    classes = mock_kubernetes.get_all_objects_for_test("StorageClass")
    assert len(classes) == 1
    storage_class = classes[0]
    assert storage_class.metadata.name == "btrfs-provisioner-n1"
    assert storage_class.metadata.labels == {CONTROLLING_NODE_LABEL: "n1"}
    assert storage_class.provisioner == PROVISIONER_NAME
    assert storage_class.allow_volume_expansion is False

    with pytest.raises(StorageClassExistsError) as excinfo:
        await provisioner.initialize_node()
    assert excinfo.value.name == "btrfs-provisioner-n1"

    # Another node gets its own storage class.
    config.storage_class_per_node_name_pattern = "local-{}-btrfs"
    await factory.create_provisioner("n2").initialize_node()
    names = [
        c.metadata.name
        for c in mock_kubernetes.get_all_objects_for_test("StorageClass")
    ]
    assert names == ["btrfs-provisioner-n1", "local-n2-btrfs"]

    # Without per-node storage classes, only the volume root is checked.
    config.storage_class_per_node_enabled = False
    await factory.create_provisioner("n3").initialize_node()
    classes = mock_kubernetes.get_all_objects_for_test("StorageClass")
    assert len(classes) == 2
    (host_fs / "volumes").rmdir()
    with pytest.raises(MissingVolumeRootError):
        await factory.create_provisioner("n3").initialize_node()
