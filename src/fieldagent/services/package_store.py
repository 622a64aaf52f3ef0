"""Versioned package snapshots behind an atomically swapped symlink.

Directory structure:
    {work_dir}/{target}/
    ├── v1.0.0/
    │   ├── package          # Installed artifact
    │   └── install.json     # UpdateInfo of the install
    ├── v1.1.0/
    └── current -> v1.1.0/   # Installed version (symlink)
"""

import logging
import os
from pathlib import Path
from typing import AsyncIterator, List, Union

import aiofiles

from fieldagent.exceptions import InstallationFailedError, RetryAfterError
from fieldagent.models.update import UpdateInfo
from fieldagent.models.version import EMPTY_VERSION, Version

PACKAGE_FILE = "package"
INSTALL_INFO_FILE = "install.json"
COPY_BUFFER_SIZE = 64 * 1024

PackageSource = Union[Path, AsyncIterator[bytes]]


class PackageStore:
    """Installs artifacts of one update target as version snapshots."""

    def __init__(self, base_dir: Path, base_version: Version = EMPTY_VERSION):
        """Initialize package store.

        Args:
            base_dir: Directory holding this target's snapshots
            base_version: Version reported while nothing has been installed
        """
        self.logger = logging.getLogger(f"fieldagent.package_store.{Path(base_dir).name}")
        self.base_dir = Path(base_dir)
        self.base_version = base_version
        self.current_link = self.base_dir / "current"

    def get_installed_version(self) -> Version:
        """Version the current symlink points at, or the base version."""
        if not self.current_link.is_symlink():
            return self.base_version

        version_name = Path(os.readlink(self.current_link)).name
        try:
            return Version.parse(version_name[1:] if version_name.startswith("v") else version_name)
        except ValueError:
            self.logger.warning(f"current points at unknown version directory: {version_name}")
            return self.base_version

    def list_versions(self) -> List[Version]:
        """All installed snapshots, ascending."""
        if not self.base_dir.exists():
            return []
        versions = []
        for item in self.base_dir.iterdir():
            if item.is_symlink() or not item.is_dir() or not item.name.startswith("v"):
                continue
            try:
                versions.append(Version.parse(item.name[1:]))
            except ValueError:
                continue
        return sorted(versions)

    async def install(self, update_info: UpdateInfo, source: PackageSource) -> Path:
        """Install an artifact and make it current.

        The artifact is written to a temp file, renamed into place, and the
        ``current`` symlink is swapped last, so a failed install never
        changes the installed version.

        Args:
            update_info: Describes the install attempt
            source: Local staging file or async byte stream

        Returns:
            Path to the installed package file

        Raises:
            InstallationFailedError: If any step fails (cause attached)
            RetryAfterError: The source stream hit a server backoff
        """
        version_dir = self.base_dir / f"v{update_info.to_version}"
        package_path = version_dir / PACKAGE_FILE
        temp_path = version_dir / f".{PACKAGE_FILE}.tmp"
        self.logger.info(f"Installing {update_info}")

        try:
            version_dir.mkdir(parents=True, exist_ok=True)
            size = await self._write(temp_path, source)
            temp_path.replace(package_path)
            (version_dir / INSTALL_INFO_FILE).write_text(
                update_info.model_dump_json(), encoding="utf-8"
            )
            self._update_current(version_dir)
        except RetryAfterError:
            # Server backoff while streaming is not an install failure
            temp_path.unlink(missing_ok=True)
            raise
        except Exception as e:
            temp_path.unlink(missing_ok=True)
            self.logger.error(f"Installation of {update_info} failed: {e}")
            raise InstallationFailedError(
                f"Could not install {update_info.update_type} {update_info.to_version}", cause=e
            ) from e

        self.logger.info(f"Installed {update_info.to_version} ({size} bytes) at {package_path}")
        return package_path

    async def _write(self, target: Path, source: PackageSource) -> int:
        written = 0
        async with aiofiles.open(target, "wb") as out:
            if isinstance(source, Path):
                async with aiofiles.open(source, "rb") as src:
                    while True:
                        data = await src.read(COPY_BUFFER_SIZE)
                        if not data:
                            break
                        await out.write(data)
                        written += len(data)
            else:
                async for data in source:
                    await out.write(data)
                    written += len(data)
        return written

    def _update_current(self, version_dir: Path) -> None:
        """Atomically point ``current`` at version_dir."""
        temp_link = self.base_dir / f".current.tmp.{os.getpid()}"
        try:
            temp_link.unlink(missing_ok=True)
            temp_link.symlink_to(os.path.relpath(version_dir, self.base_dir))
            temp_link.replace(self.current_link)
        except OSError:
            temp_link.unlink(missing_ok=True)
            raise
        self.logger.info(f"Updated symlink: {self.current_link} -> {version_dir}")
