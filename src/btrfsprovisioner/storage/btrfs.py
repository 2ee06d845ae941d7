"""Wrapper around the btrfs command-line tools."""

from __future__ import annotations

import re
import subprocess
import sys
from pathlib import Path

from structlog.stdlib import BoundLogger

from ..exceptions import BtrfsCommandError, QgroupNotFoundError

__all__ = ["BtrfsWrapper"]

_QGROUP_REGEX = re.compile(r"^(\d+/\d+)\s", re.MULTILINE)


class BtrfsWrapper:
    """Run btrfs subvolume and quota group operations.

    Every operation runs the corresponding command as a separate process,
    captures its output, and copies that output to the output streams of
    this process so that it shows up in the job log. All paths are absolute
    paths as seen by the btrfs tools.

    Parameters
    ----------
    host_fs
        If given, every command is run under :command:`chroot` into this
        directory, so that a containerized job can operate on the
        filesystem of its node.
    logger
        Logger to use.
    """

    def __init__(self, host_fs: Path | None, logger: BoundLogger) -> None:
        self._host_fs = host_fs
        self._logger = logger

    def get_qgroup(self, path: Path) -> str:
        """Find the quota group of a subvolume.

        The output of :command:`btrfs qgroup show` is scanned line by line
        for the first quota group identifier, since its column layout varies
        between versions of the tools.

        Parameters
        ----------
        path
            Path to the subvolume.

        Returns
        -------
        str
            Quota group identifier, such as ``0/257``.

        Raises
        ------
        BtrfsCommandError
            Raised if listing the quota groups failed.
        QgroupNotFoundError
            Raised if the output contains no quota group.
        """
        output = self.qgroup_show(path)
        match = _QGROUP_REGEX.search(output)
        if not match:
            raise QgroupNotFoundError(path)
        return match.group(1)

    def move(self, source: Path, target: Path) -> str:
        """Rename a subvolume."""
        return self._run(["mv", str(source), str(target)])

    def qgroup_destroy(self, qgroup: str, path: Path) -> str:
        """Destroy a quota group of the filesystem holding a path."""
        return self._run(["btrfs", "qgroup", "destroy", qgroup, str(path)])

    def qgroup_limit(self, limit: int, path: Path) -> str:
        """Limit the size of a subvolume to ``limit`` bytes."""
        cmd = ["btrfs", "qgroup", "limit", str(limit), str(path)]
        return self._run(cmd)

    def qgroup_show(self, path: Path) -> str:
        """List the quota groups of a subvolume and its parents."""
        return self._run(["btrfs", "qgroup", "show", "-pcref", str(path)])

    def quota_enable(self, path: Path) -> str:
        """Enable quota accounting on the filesystem holding a path."""
        return self._run(["btrfs", "quota", "enable", str(path)])

    def quota_rescan_wait(self, path: Path) -> str:
        """Rescan quota usage and wait for the rescan to finish."""
        return self._run(["btrfs", "quota", "rescan", "-w", str(path)])

    def subvolume_create(self, path: Path) -> str:
        """Create a subvolume."""
        return self._run(["btrfs", "subvolume", "create", str(path)])

    def subvolume_delete(self, path: Path) -> str:
        """Delete a subvolume and wait for the deletion to be committed."""
        cmd = ["btrfs", "subvolume", "delete", "--commit-after", str(path)]
        return self._run(cmd)

    def _run(self, command: list[str]) -> str:
        """Run a command and return its standard output.

        Parameters
        ----------
        command
            Command and arguments.

        Returns
        -------
        str
            Standard output of the command.

        Raises
        ------
        BtrfsCommandError
            Raised if the command exited with a non-zero status or could not
            be started.
        """
        if self._host_fs:
            command = ["chroot", str(self._host_fs), *command]
        self._logger.debug("Running command", command=command)
        try:
            result = subprocess.run(
                command, capture_output=True, text=True, check=False
            )
        except OSError as e:
            raise BtrfsCommandError(command, 127, str(e)) from e
        sys.stdout.write(result.stdout)
        sys.stderr.write(result.stderr)
        if result.returncode != 0:
            raise BtrfsCommandError(command, result.returncode, result.stderr)
        return result.stdout
