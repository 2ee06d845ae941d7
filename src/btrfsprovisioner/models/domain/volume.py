"""Location of a volume on the btrfs filesystem."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Self

from ...constants import ARCHIVE_PREFIX

__all__ = ["BtrfsVolumeMetadata", "to_host_path"]


def to_host_path(path: Path, host_fs: Path | None) -> Path:
    """Rewrite a path as seen by the btrfs tools into one we can access.

    Parameters
    ----------
    path
        Absolute path inside the host root filesystem.
    host_fs
        Where the host root filesystem is mounted, if anywhere.

    Returns
    -------
    Path
        Path usable by this process.
    """
    if not host_fs:
        return path
    return host_fs / path.relative_to(path.anchor)


@dataclass(frozen=True)
class BtrfsVolumeMetadata:
    """Paths belonging to one provisioned volume."""

    name: str
    """Name of the persistent volume, also the subvolume directory name."""

    path: Path
    """Path to the subvolume as seen by the btrfs tools."""

    host_path: Path
    """Path to the subvolume as seen by this process."""

    @classmethod
    def from_volume_name(
        cls, name: str, volumes_dir: Path, host_fs: Path | None
    ) -> Self:
        """Derive the paths of a volume from its name.

        Parameters
        ----------
        name
            Name of the persistent volume.
        volumes_dir
            Directory holding all subvolumes.
        host_fs
            Where the host root filesystem is mounted, if anywhere.

        Returns
        -------
        BtrfsVolumeMetadata
            Paths of the volume.

        Raises
        ------
        ValueError
            Raised if the name is not a single path component.
        """
        if not name or name in (".", "..") or "/" in name:
            raise ValueError(f"Invalid volume name {name!r}")
        path = volumes_dir / name
        host = to_host_path(path, host_fs)
        return cls(name=name, path=path, host_path=host)

    def archive_path(self, timestamp: int) -> Path:
        """Path to which the subvolume is moved when archived.

        Parameters
        ----------
        timestamp
            Seconds since the epoch at which the volume was archived.

        Returns
        -------
        Path
            Sibling path of the subvolume, as seen by the btrfs tools.
        """
        name = f"{ARCHIVE_PREFIX}-{timestamp}-{self.name}"
        return self.path.with_name(name)
