"""DeploymentRotator - dated backup of production and promotion of staging.

Layout handled here (all siblings under one root):

    staging/          source of the promotion
    prod/             production slot
    prod_YYYYMMDD/    one backup per calendar date, last rotation of the day wins
    prod_failed_YYYYMMDD/  partial or failed production tree set aside, one per date
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
import errno
import logging
import os
import re
import shutil

import psutil

from service_deployer.auto_deploy.errors import (
    CopyFailed,
    ProductionMissing,
    RotateError,
    StagingMissing,
)
from service_deployer.correlation import get_correlation_id
from service_deployer.logging_utils import format_error_log

logger = logging.getLogger(__name__)

DATE_STAMP_FORMAT = "%Y%m%d"


@dataclass(frozen=True)
class RotationResult:
    """Paths left behind by a successful rotation."""

    production_path: Path
    backup_path: Path
    replaced_backup: bool


def today_stamp(now: Optional[datetime] = None) -> str:
    """Calendar date stamp used in backup directory names."""
    return (now or datetime.now()).strftime(DATE_STAMP_FORMAT)


def backup_path_for(production_path: Path, backup_root: Path, date_stamp: str) -> Path:
    return backup_root / f"{production_path.name}_{date_stamp}"


def failed_path_for(production_path: Path, backup_root: Path, date_stamp: str) -> Path:
    return backup_root / f"{production_path.name}_failed_{date_stamp}"


def list_backups(backup_root: Path, production_basename: str) -> List[Path]:
    """Return dated backups of a production directory, newest first."""
    if not backup_root.is_dir():
        return []
    pattern = re.compile(rf"^{re.escape(production_basename)}_(\d{{8}})$")
    backups = [
        entry
        for entry in backup_root.iterdir()
        if entry.is_dir() and pattern.match(entry.name)
    ]
    return sorted(backups, key=lambda p: p.name, reverse=True)


def list_failed(backup_root: Path, production_basename: str) -> List[Path]:
    """Return production trees set aside after a failure, newest first."""
    if not backup_root.is_dir():
        return []
    pattern = re.compile(rf"^{re.escape(production_basename)}_failed_(\d{{8}})$")
    failed = [
        entry
        for entry in backup_root.iterdir()
        if entry.is_dir() and pattern.match(entry.name)
    ]
    return sorted(failed, key=lambda p: p.name, reverse=True)


def tree_size(root: Path) -> int:
    """Total size in bytes of the regular files under root (symlinks not followed)."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, filename)).st_size
            except OSError:
                continue
    return total


def tree_manifest(root: Path) -> Dict[str, object]:
    """Relative path -> size (files) or link target (symlinks) for a tree."""
    manifest: Dict[str, object] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, root)
            if os.path.islink(full):
                manifest[rel] = ("link", os.readlink(full))
            elif os.path.isfile(full):
                manifest[rel] = os.path.getsize(full)
            else:
                manifest[rel] = "dir"
    return manifest


class DeploymentRotator:
    """Moves production to a dated backup and repopulates it from staging."""

    def rotate(
        self,
        staging_path: Path,
        production_path: Path,
        backup_root: Path,
        date_stamp: str,
    ) -> RotationResult:
        """Rotate directories: production -> backup, staging -> production.

        Args:
            staging_path: Built staging tree to promote
            production_path: Production slot
            backup_root: Directory holding dated backups
            date_stamp: Calendar date (YYYYMMDD) naming the backup

        Returns:
            RotationResult with the new production and backup paths

        Raises:
            StagingMissing: No staging tree
            ProductionMissing: No production directory to back up
            CopyFailed: Not enough space, or a copy step failed
            RotateError: Any other filesystem failure
        """
        if not staging_path.is_dir():
            raise StagingMissing(f"Staging tree not found: {staging_path}", staging_path)
        if not production_path.is_dir():
            raise ProductionMissing(
                f"Production directory not found: {production_path}; "
                "previous run left an inconsistent state, operator intervention required",
                production_path,
            )

        self._check_free_space(staging_path, backup_root)

        backup_path = backup_path_for(production_path, backup_root, date_stamp)
        replaced_backup = backup_path.exists()
        if replaced_backup:
            logger.info(
                f"Removing earlier backup from today: {backup_path}",
                extra={"correlation_id": get_correlation_id()},
            )
            try:
                shutil.rmtree(backup_path)
            except OSError as e:
                raise RotateError(
                    f"Could not remove existing backup {backup_path}: {e}", backup_path
                ) from e

        logger.info(
            f"Renaming {production_path} to {backup_path}",
            extra={"correlation_id": get_correlation_id()},
        )
        self._move_to_backup(production_path, backup_path)

        logger.info(
            f"Creating new production directory {production_path}",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            production_path.mkdir()
        except OSError as e:
            raise CopyFailed(
                f"Could not create production directory {production_path}: {e}",
                production_path,
                production_moved=True,
            ) from e

        logger.info(
            f"Copying {staging_path} to {production_path}",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            shutil.copytree(
                staging_path, production_path, symlinks=True, dirs_exist_ok=True
            )
        except OSError as e:
            self._discard_partial(production_path, backup_root, date_stamp)
            raise CopyFailed(
                f"Copying {staging_path} to {production_path} failed: {e}",
                production_path,
                production_moved=True,
            ) from e

        return RotationResult(
            production_path=production_path,
            backup_path=backup_path,
            replaced_backup=replaced_backup,
        )

    def _check_free_space(self, staging_path: Path, backup_root: Path) -> None:
        """Refuse to start when the promoted copy cannot fit on the volume."""
        required = tree_size(staging_path)
        try:
            free = psutil.disk_usage(str(backup_root)).free
        except OSError as e:
            logger.warning(
                format_error_log(
                    "DEPLOY-ROTATE-005", f"Could not check free space: {e}"
                ),
                extra={"correlation_id": get_correlation_id()},
            )
            return
        if free < required:
            raise CopyFailed(
                f"Insufficient space on {backup_root}: {required} bytes needed, "
                f"{free} bytes free",
                backup_root,
            )

    def _move_to_backup(self, production_path: Path, backup_path: Path) -> None:
        """Rename production to the backup path.

        A cross-device move falls back to copy, verify, then delete; the old
        production tree is only removed once its copy is verified.
        """
        try:
            os.rename(production_path, backup_path)
            return
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise RotateError(
                    f"Could not rename {production_path} to {backup_path}: {e}",
                    production_path,
                ) from e

        logger.warning(
            f"{backup_path.parent} is on another device, falling back to copy",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            shutil.copytree(production_path, backup_path, symlinks=True)
        except OSError as e:
            shutil.rmtree(backup_path, ignore_errors=True)
            raise CopyFailed(
                f"Backup copy of {production_path} failed: {e}", backup_path
            ) from e

        if tree_manifest(production_path) != tree_manifest(backup_path):
            shutil.rmtree(backup_path, ignore_errors=True)
            raise CopyFailed(
                f"Backup copy {backup_path} does not match {production_path}",
                backup_path,
            )

        try:
            shutil.rmtree(production_path)
        except OSError as e:
            self._discard_partial(production_path, backup_path.parent, today_stamp())
            raise RotateError(
                f"Backup verified but old production {production_path} "
                f"could not be removed: {e}",
                production_path,
                production_moved=True,
            ) from e

    def set_aside(
        self, production_path: Path, backup_root: Path, date_stamp: str
    ) -> Path:
        """Move a failed production tree out of the production slot.

        The tree lands in <prod>_failed_<date_stamp>; an earlier failed tree
        from the same date is replaced, so at most one is kept per date.

        Raises:
            RotateError: The tree could not be moved
        """
        failed_path = failed_path_for(production_path, backup_root, date_stamp)
        logger.warning(
            f"Moving failed production directory aside to {failed_path}",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            if failed_path.exists():
                shutil.rmtree(failed_path)
            os.rename(production_path, failed_path)
        except OSError as e:
            raise RotateError(
                f"Could not move {production_path} aside: {e}",
                production_path,
                production_moved=True,
            ) from e
        return failed_path

    def _discard_partial(
        self, production_path: Path, backup_root: Path, date_stamp: str
    ) -> None:
        """Empty the production slot after a failure left a partial tree in it.

        Afterwards the slot is empty, so the next run stops on
        ProductionMissing instead of comparing against a half-copied tree.
        """
        if not production_path.exists():
            return
        try:
            self.set_aside(production_path, backup_root, date_stamp)
            return
        except RotateError as e:
            logger.error(
                format_error_log("DEPLOY-ROTATE-006", str(e)),
                extra={"correlation_id": get_correlation_id()},
            )
        try:
            shutil.rmtree(production_path)
        except OSError as e:
            logger.error(
                format_error_log(
                    "DEPLOY-ROTATE-007",
                    f"Partial production directory {production_path} could not "
                    f"be removed, operator intervention required: {e}",
                ),
                extra={"correlation_id": get_correlation_id()},
            )

    def restore_latest_backup(self, production_path: Path, backup_root: Path) -> Path:
        """Put the newest dated backup back into the production slot.

        A leftover (possibly partial) production directory is moved aside to
        <prod>_failed_<YYYYMMDD> rather than deleted.

        Returns:
            The backup path that was restored

        Raises:
            RotateError: No backup exists or the rename failed
        """
        backups = list_backups(backup_root, production_path.name)
        if not backups:
            raise RotateError(
                f"No backup of {production_path.name} found in {backup_root}",
                backup_root,
            )
        latest = backups[0]

        if production_path.exists():
            self.set_aside(production_path, backup_root, today_stamp())

        logger.info(
            f"Restoring {latest} to {production_path}",
            extra={"correlation_id": get_correlation_id()},
        )
        try:
            os.rename(latest, production_path)
        except OSError as e:
            raise RotateError(
                f"Could not restore {latest} to {production_path}: {e}", latest
            ) from e
        return latest
