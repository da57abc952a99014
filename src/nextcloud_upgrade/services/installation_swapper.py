"""
Installation Swapper - Replaces the installation tree with a new release

The archive is extracted into an isolated temporary directory; the live tree
is then moved aside to ``<install>.old`` and the new tree moved into place.

Known risk window: the two moves are not atomic. A crash between them
leaves no directory at the install path; ``<install>.old`` still holds the
previous release and must be moved back by hand.
"""
import grp
import os
import pwd
import shutil
import tarfile
import tempfile
import time
import zipfile
from pathlib import Path
from typing import Optional

import structlog

from nextcloud_upgrade.errors import ExtractError, SwapError
from nextcloud_upgrade.models import Artifact, ArchiveFormat

logger = structlog.get_logger(__name__)

EXTRACT_PREFIX = "nextcloud_extract_"
RELEASE_ROOT = "nextcloud"
DEFAULT_DIR_MODE = 0o750
DEFAULT_FILE_MODE = 0o640


def _is_within(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
        return True
    except ValueError:
        return False


def _clear_old_path(old_path: Path) -> None:
    """
    Make room for the moved-aside tree

    A leftover that cannot be deleted is renamed to <install>.old.<timestamp>.

    Raises:
        SwapError: If the leftover can neither be removed nor renamed
    """
    if not old_path.exists():
        return
    logger.warning("removing_previous_old_install", path=str(old_path))
    try:
        shutil.rmtree(old_path)
        return
    except OSError as e:
        logger.warning("previous_old_install_not_removed", path=str(old_path), error=str(e))

    stamp = time.strftime("%Y%m%d-%H%M%S")
    aside = old_path.with_name(f"{old_path.name}.{stamp}")
    counter = 1
    while aside.exists():
        aside = old_path.with_name(f"{old_path.name}.{stamp}-{counter}")
        counter += 1
    try:
        os.rename(old_path, aside)
    except OSError as e:
        raise SwapError(
            f"Could not remove or rename the leftover {old_path}: {e}. Move it away and retry"
        ) from e
    logger.warning("previous_old_install_renamed", path=str(old_path), destination=str(aside))


def extract_archive(artifact: Artifact, destination: Path) -> Path:
    """
    Extract a release archive and return its top-level nextcloud directory

    Raises:
        ExtractError: If the archive is corrupt, escapes destination or lacks
            the nextcloud directory
    """
    logger.info("extracting_archive", archive=str(artifact.archive_path), destination=str(destination))
    try:
        if artifact.format is ArchiveFormat.ZIP:
            with zipfile.ZipFile(artifact.archive_path) as archive:
                for name in archive.namelist():
                    if not _is_within(destination, destination / name):
                        raise ExtractError(f"Archive member escapes extraction directory: {name}")
                archive.extractall(destination)
        else:
            with tarfile.open(artifact.archive_path, "r:bz2") as archive:
                members = archive.getmembers()
                for member in members:
                    if not _is_within(destination, destination / member.name):
                        raise ExtractError(f"Archive member escapes extraction directory: {member.name}")
                if hasattr(tarfile, "data_filter"):
                    archive.extractall(destination, members=members, filter="data")
                else:
                    archive.extractall(destination, members=members)
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
        raise ExtractError(f"Failed to extract {artifact.archive_path}: {e}") from e

    release_dir = destination / RELEASE_ROOT
    if not release_dir.is_dir():
        raise ExtractError(f"Archive {artifact.archive_path.name} has no '{RELEASE_ROOT}' directory")
    return release_dir


def fix_permissions(
    path: Path,
    owner: str,
    group: Optional[str] = None,
    dir_mode: int = DEFAULT_DIR_MODE,
    file_mode: int = DEFAULT_FILE_MODE,
) -> None:
    """
    Recursively set ownership and normalise modes under path

    Raises:
        SwapError: If the account is unknown or a change fails
    """
    try:
        uid = pwd.getpwnam(owner).pw_uid
        gid = grp.getgrnam(group or owner).gr_gid
    except KeyError as e:
        raise SwapError(f"Unknown account for ownership change: {e}") from e

    logger.info("fixing_permissions", path=str(path), owner=owner, group=group or owner)
    try:
        os.chown(path, uid, gid, follow_symlinks=False)
        os.chmod(path, dir_mode)
        for root, dirs, files in os.walk(path):
            for name in dirs:
                entry = os.path.join(root, name)
                os.chown(entry, uid, gid, follow_symlinks=False)
                if not os.path.islink(entry):
                    os.chmod(entry, dir_mode)
            for name in files:
                entry = os.path.join(root, name)
                os.chown(entry, uid, gid, follow_symlinks=False)
                if not os.path.islink(entry):
                    os.chmod(entry, file_mode)
    except OSError as e:
        raise SwapError(f"Failed to fix permissions under {path}: {e}") from e


class InstallationSwapper:
    """
    Swaps a verified release into the install path

    Args:
        work_dir: Parent of the temporary extraction directory (system temp
            by default; ideally on the same filesystem as the install path)
    """

    def __init__(self, work_dir: Optional[Path] = None):
        self.work_dir = work_dir

    @staticmethod
    def old_path(install_path: Path) -> Path:
        return install_path.with_name(install_path.name + ".old")

    def swap(self, artifact: Artifact, install_path: Path, preserved_config_path: Path) -> None:
        """
        Replace install_path with the release in artifact

        Args:
            artifact: Verified release archive
            install_path: Live installation directory
            preserved_config_path: config.php to carry into the new tree; it
                may live inside install_path, in which case it is read from
                the moved-aside tree

        Raises:
            ExtractError: If extraction fails (the live tree is untouched)
            SwapError: If a leftover .old tree blocks the swap, a move fails
                or the config restore fails
        """
        install_path = Path(install_path)
        old_path = self.old_path(install_path)
        temp_dir = Path(tempfile.mkdtemp(prefix=EXTRACT_PREFIX, dir=self.work_dir))

        try:
            release_dir = extract_archive(artifact, temp_dir)

            _clear_old_path(old_path)

            config_source = Path(preserved_config_path)
            if _is_within(install_path, config_source):
                config_source = old_path / config_source.resolve().relative_to(install_path.resolve())

            logger.info("moving_current_install", source=str(install_path), destination=str(old_path))
            try:
                shutil.move(str(install_path), str(old_path))
            except OSError as e:
                raise SwapError(f"Could not move {install_path} to {old_path}: {e}") from e

            logger.info("moving_new_install", source=str(release_dir), destination=str(install_path))
            try:
                shutil.move(str(release_dir), str(install_path))
            except OSError as e:
                logger.critical("install_path_missing", install_path=str(install_path), previous=str(old_path))
                raise SwapError(
                    f"Could not move new release into {install_path}: {e}. "
                    f"The previous installation is at {old_path}"
                ) from e

            restored = install_path / "config" / "config.php"
            logger.info("restoring_config", source=str(config_source), destination=str(restored))
            try:
                restored.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(config_source, restored)
            except OSError as e:
                raise SwapError(f"Could not restore {config_source} into {restored}: {e}") from e

        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        logger.info("installation_swapped", install_path=str(install_path))

    def fix_permissions(self, install_path: Path, owner: str, group: Optional[str] = None) -> None:
        """Hand the new tree to the service account (directories 0750, files 0640)"""
        fix_permissions(Path(install_path), owner, group)
