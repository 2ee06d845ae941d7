"""Test fixtures for btrfs provisioner tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
import pytest_asyncio

from btrfsprovisioner.config import Config
from btrfsprovisioner.factory import Factory

from .support.btrfs import MockBtrfs, patch_btrfs
from .support.kubernetes import MockKubernetesApi, patch_kubernetes


@pytest.fixture
def host_fs(tmp_path: Path) -> Path:
    """Temporary host root filesystem with an empty volume root."""
    host_fs = tmp_path / "host"
    (host_fs / "volumes").mkdir(parents=True)
    return host_fs


@pytest.fixture
def config(host_fs: Path) -> Config:
    """Construct default configuration for tests."""
    return Config(host_fs=host_fs, volumes_dir=Path("/volumes"))


@pytest.fixture
def mock_btrfs(host_fs: Path) -> Iterator[MockBtrfs]:
    yield from patch_btrfs(host_fs)


@pytest.fixture
def mock_kubernetes() -> Iterator[MockKubernetesApi]:
    yield from patch_kubernetes()


@pytest_asyncio.fixture
async def factory(
    config: Config, mock_kubernetes: MockKubernetesApi
) -> AsyncIterator[Factory]:
    """Component factory backed by the mock Kubernetes API."""
    async with Factory.standalone(config) as factory:
        yield factory
