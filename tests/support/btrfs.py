"""Fake btrfs tools for testing.

Replaces `subprocess.run` with a fake that interprets the btrfs and
:command:`mv` commands run by the provisioner against a temporary host root
filesystem, so that subvolumes show up as ordinary directories.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

__all__ = ["MockBtrfs", "patch_btrfs"]


class MockBtrfs:
    """Fake implementation of the btrfs command-line tools.

    Parameters
    ----------
    host_fs
        Directory standing in for the host root filesystem. Commands must be
        run under :command:`chroot` into this directory.

    Attributes
    ----------
    commands
        Every command run, without the :command:`chroot` prefix.
    limits
        Quota limit in bytes of each subvolume, keyed by path.
    qgroups
        Quota group of each subvolume, keyed by path.
    quota_enabled
        Whether quotas have been enabled.
    """

    def __init__(self, host_fs: Path) -> None:
        self.host_fs = host_fs
        self.commands: list[list[str]] = []
        self.limits: dict[Path, int] = {}
        self.qgroups: dict[Path, str] = {}
        self.quota_enabled = False
        self._failures: list[list[str]] = []
        self._next_qgroup = 257

    def add_subvolume_for_test(self, path: Path) -> str:
        """Create a subvolume outside of the provisioner.

        Parameters
        ----------
        path
            Path of the subvolume inside the host root.

        Returns
        -------
        str
            Quota group of the subvolume.
        """
        self._host(path).mkdir()
        qgroup = f"0/{self._next_qgroup}"
        self._next_qgroup += 1
        self.qgroups[path] = qgroup
        return qgroup

    def fail_command_for_test(self, *prefix: str) -> None:
        """Make commands starting with the given arguments fail."""
        self._failures.append(list(prefix))

    def run(
        self,
        command: list[str],
        *,
        capture_output: bool,
        text: bool,
        check: bool,
    ) -> subprocess.CompletedProcess[str]:
        assert capture_output
        assert text
        assert not check
        assert command[:2] == ["chroot", str(self.host_fs)]
        args = command[2:]
        self.commands.append(args)
        for prefix in self._failures:
            if args[: len(prefix)] == prefix:
                return self._result(command, 1, stderr="Injected failure\n")
        try:
            stdout = self._dispatch(args)
        except (KeyError, OSError) as e:
            return self._result(command, 1, stderr=f"ERROR: {e!s}\n")
        return self._result(command, 0, stdout=stdout)

    def _dispatch(self, args: list[str]) -> str:
        match args:
            case ["btrfs", "subvolume", "create", path]:
                self.add_subvolume_for_test(Path(path))
                return f"Create subvolume '{path}'\n"
            case ["btrfs", "subvolume", "delete", "--commit-after", path]:
                del self.qgroups[Path(path)]
                shutil.rmtree(self._host(Path(path)))
                return f"Delete subvolume (commit): '{path}'\n"
            case ["btrfs", "quota", "enable", _]:
                self.quota_enabled = True
                return ""
            case ["btrfs", "quota", "rescan", "-w", _]:
                return ""
            case ["btrfs", "qgroup", "limit", limit, path]:
                if Path(path) not in self.qgroups:
                    raise KeyError(path)
                self.limits[Path(path)] = int(limit)
                return ""
            case ["btrfs", "qgroup", "show", "-pcref", path]:
                qgroup = self.qgroups[Path(path)]
                limit = self.limits.get(Path(path), "none")
                return (
                    "qgroupid   rfer   excl  max_rfer  max_excl  parent"
                    "  child\n"
                    "--------   ----   ----  --------  --------  ------"
                    "  -----\n"
                    f"{qgroup}  16.00KiB  16.00KiB  {limit}  none  ---"
                    "  ---\n"
                )
            case ["btrfs", "qgroup", "destroy", qgroup, _]:
                paths = {q: p for p, q in self.qgroups.items()}
                self.qgroups[paths[qgroup]] = ""
                return ""
            case ["mv", source, target]:
                self._host(Path(source)).rename(self._host(Path(target)))
                self.qgroups[Path(target)] = self.qgroups.pop(Path(source))
                return ""
            case _:
                raise OSError(f"Unknown command {args}")

    def _host(self, path: Path) -> Path:
        return self.host_fs / path.relative_to(path.anchor)

    def _result(
        self,
        command: list[str],
        returncode: int,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            command, returncode, stdout=stdout, stderr=stderr
        )


def patch_btrfs(host_fs: Path) -> Iterator[MockBtrfs]:
    """Replace `subprocess.run` with the fake btrfs tools.

    Parameters
    ----------
    host_fs
        Directory standing in for the host root filesystem.

    Returns
    -------
    MockBtrfs
        The fake btrfs tools.
    """
    mock = MockBtrfs(host_fs)
    with patch.object(subprocess, "run", side_effect=mock.run):
        yield mock
