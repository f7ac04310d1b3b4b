"""Filesystem helpers for pgclusters."""

import logging
import os
import shutil
import tempfile
from typing import Optional, Tuple

from rich.console import Console

from pgclusters.constants import DIR_MODE
from pgclusters.errors import FilesystemError


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        try:
            os.chmod(path, mode)
        except OSError as exc:
            raise FilesystemError(f"Could not set permissions on {path}: {exc}", path=path) from exc

    def chown(self, path: str, uid: int, gid: int, follow_symlinks: bool = True):
        if os.geteuid() != 0 and uid == os.geteuid():
            # unprivileged callers can only hand files to a group they belong to
            try:
                os.chown(path, -1, gid, follow_symlinks=follow_symlinks)
            except OSError:
                self.logger.debug("Keeping group of %s", path)
            return
        try:
            os.chown(path, uid, gid, follow_symlinks=follow_symlinks)
        except OSError as exc:
            raise FilesystemError(f"Could not change owner of {path}: {exc}", path=path) from exc

    def owner_of(self, path: str) -> Optional[Tuple[int, int]]:
        try:
            stat_result = os.stat(path)
        except OSError:
            return None
        return stat_result.st_uid, stat_result.st_gid

    def make_dir(
        self,
        path: str,
        uid: Optional[int] = None,
        gid: Optional[int] = None,
        mode: int = DIR_MODE,
    ) -> bool:
        """Creates ``path`` and missing root-owned parents; returns False if it existed."""
        if os.path.isdir(path):
            return False
        parent = os.path.dirname(path.rstrip("/"))
        try:
            if parent:
                os.makedirs(parent, mode=DIR_MODE, exist_ok=True)
            os.mkdir(path, mode)
        except OSError as exc:
            raise FilesystemError(f"Could not create directory {path}: {exc}", path=path) from exc
        self.set_permissions(path, mode)
        if uid is not None and gid is not None:
            self.chown(path, uid, gid)
        self.logger.debug("Created directory: %s", path)
        return True

    def atomic_write(
        self,
        path: str,
        content: str,
        mode: Optional[int] = None,
        owner: Optional[Tuple[int, int]] = None,
    ):
        """Writes through a sibling temporary file so readers never see a partial file.

        Owner and permission bits are copied from the file being replaced
        unless ``mode``/``owner`` are given.
        """
        directory = os.path.dirname(path) or "."
        reference = None
        if os.path.exists(path):
            reference = os.stat(path)

        try:
            fd, temp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", dir=directory)
        except OSError as exc:
            raise FilesystemError(f"Could not write {path}: {exc}", path=path) from exc

        try:
            with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape") as file_obj:
                file_obj.write(content)
            if reference is not None:
                try:
                    os.chown(temp_path, reference.st_uid, reference.st_gid)
                except OSError:
                    self.logger.debug("Could not copy owner of %s (unprivileged)", path)
                os.chmod(temp_path, reference.st_mode & 0o7777)
            if mode is not None:
                os.chmod(temp_path, mode)
            elif reference is None:
                os.chmod(temp_path, 0o644)
            if owner is not None:
                self.chown(temp_path, owner[0], owner[1])
            os.replace(temp_path, path)
        except OSError as exc:
            raise FilesystemError(f"Could not write {path}: {exc}", path=path) from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    def install_file(self, source: str, dest: str, uid: int, gid: int, mode: int):
        """Copies ``source`` to ``dest`` with the given owner and mode."""
        if os.path.isdir(dest):
            dest = os.path.join(dest, os.path.basename(source))
        try:
            shutil.copyfile(source, dest)
        except OSError as exc:
            raise FilesystemError(f"Could not install {source} to {dest}: {exc}", path=dest) from exc
        self.set_permissions(dest, mode)
        self.chown(dest, uid, gid)

    def move(self, source: str, dest: str):
        try:
            shutil.move(source, dest)
        except OSError as exc:
            raise FilesystemError(f"Could not move {source} to {dest}: {exc}", path=source) from exc

    def rename(self, source: str, dest: str):
        try:
            os.rename(source, dest)
        except OSError as exc:
            raise FilesystemError(f"Could not rename {source} to {dest}: {exc}", path=source) from exc
        self.logger.debug("Renamed %s to %s", source, dest)

    def symlink(self, target: str, link: str):
        try:
            if os.path.lexists(link):
                os.unlink(link)
            os.symlink(target, link)
        except OSError as exc:
            raise FilesystemError(f"Could not create symlink {link}: {exc}", path=link) from exc

    def cleanup_dir(self, path: str) -> bool:
        if os.path.islink(path):
            return self.remove_file(path)
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
                return True
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)
        return False

    def remove_file(self, path: str) -> bool:
        if not os.path.lexists(path):
            return False
        try:
            os.unlink(path)
            self.logger.debug("Removed file: %s", path)
            return True
        except OSError as exc:
            message = f"Warning: Could not remove {path}: {exc}"
            self.console.print(f"[yellow]{message}[/yellow]")
            self.logger.warning(message)
            return False

    def remove_empty_dir(self, path: str) -> bool:
        try:
            os.rmdir(path)
            self.logger.debug("Removed empty directory: %s", path)
            return True
        except OSError:
            return False
