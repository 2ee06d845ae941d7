"""Tests for resolving storage classes to nodes."""

from __future__ import annotations

from datetime import timedelta

import pytest

from btrfsprovisioner.factory import Factory
from btrfsprovisioner.models.domain.storageclass import (
    DynamicAssignment,
    SingleNodeAssignment,
)
from btrfsprovisioner.timeout import Timeout

from ..support.kubernetes import MockKubernetesApi
from ..support.objects import create_storage_class


@pytest.mark.asyncio
async def test_resolver(
    factory: Factory, mock_kubernetes: MockKubernetesApi
) -> None:
    await create_storage_class(mock_kubernetes, "ours", "n1")
    await create_storage_class(mock_kubernetes, "anywhere", "*")
    await create_storage_class(mock_kubernetes, "unlabeled", None)
    await create_storage_class(
        mock_kubernetes, "theirs", "n1", provisioner="example.com/other"
    )
    resolver = factory.create_storage_class_resolver()
    timeout = Timeout("Test", timedelta(seconds=5))

    assert await resolver.is_controlling_name("ours", timeout)
    assert await resolver.is_controlling_name("unlabeled", timeout)
    assert not await resolver.is_controlling_name("theirs", timeout)
    assert not await resolver.is_controlling_name("missing", timeout)

    assignment = await resolver.get_assignment("ours", timeout)
    assert assignment == SingleNodeAssignment(node_name="n1")
    assignment = await resolver.get_assignment("anywhere", timeout)
    assert assignment == DynamicAssignment()
    assert await resolver.get_assignment("unlabeled", timeout) is None
    assert await resolver.get_assignment("missing", timeout) is None
