"""File system utilities."""

import logging
import os
import shutil
import stat
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger("localpki")

SECRET_FILE_MODE = 0o600
PUBLIC_FILE_MODE = 0o644
PRIVATE_DIR_MODE = 0o700


class FileUtils:
    """Utility class for file operations."""

    @staticmethod
    def ensure_directory(path: Path, mode: Optional[int] = None) -> None:
        """
        Ensure directory exists, create if not.

        Args:
            path: Directory path to ensure
            mode: Optional permission bits applied to the directory
        """
        path.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            os.chmod(path, mode)
        logger.debug(f"Ensured directory exists: {path}")

    @staticmethod
    def move_to_trash(path: Path) -> Path:
        """
        Move a file or directory to a _trash folder at the same level.

        The timestamp suffix keeps repeated removals of the same name apart.

        Args:
            path: Path to move to trash

        Returns:
            Path to the trashed item

        Raises:
            FileNotFoundError: If path does not exist
        """
        if not path.exists():
            raise FileNotFoundError(f"Path not found: {path}")

        trash_dir = path.parent / "_trash"
        trash_dir.mkdir(exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        dest = trash_dir / f"{path.name}_{timestamp}"
        shutil.move(str(path), str(dest))
        logger.info(f"Moved to trash: {path} -> {dest}")
        return dest

    @staticmethod
    def backup_file(path: Path, backup_dir: Path) -> Optional[Path]:
        """
        Copy an existing file into a backup directory before it is overwritten.

        Args:
            path: File about to be replaced
            backup_dir: Directory receiving the copy

        Returns:
            Path of the backup copy, or None if there was nothing to back up
        """
        if not path.exists():
            return None

        FileUtils.ensure_directory(backup_dir, mode=PRIVATE_DIR_MODE)
        dest = backup_dir / path.name
        shutil.copy2(path, dest)
        logger.info(f"Backed up {path} -> {dest}")
        return dest

    @staticmethod
    def read_file(path: Path) -> str:
        """
        Read file contents as string.

        Args:
            path: File path to read

        Returns:
            File contents as string
        """
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    @staticmethod
    def read_binary_file(path: Path) -> bytes:
        """
        Read file contents as bytes.

        Args:
            path: File path to read

        Returns:
            File contents as bytes
        """
        with open(path, "rb") as f:
            return f.read()

    @staticmethod
    def write_file(path: Path, content: Union[str, bytes], mode: int = PUBLIC_FILE_MODE) -> None:
        """
        Write content to a file and apply permission bits.

        Args:
            path: File path to write
            content: Text or binary content
            mode: Permission bits for the file
        """
        FileUtils.ensure_directory(path.parent)
        data = content.encode("utf-8") if isinstance(content, str) else content
        # Mode applies at creation, before any bytes are written
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(path, mode)
        logger.debug(f"Wrote file: {path}")

    @staticmethod
    def write_secure_file(path: Path, content: Union[str, bytes]) -> None:
        """
        Write a secret (key, bundle, password) readable by the owner only.

        Args:
            path: File path to write
            content: Secret content
        """
        FileUtils.write_file(path, content, mode=SECRET_FILE_MODE)

    @staticmethod
    def atomic_write(path: Path, content: Union[str, bytes], mode: int = PUBLIC_FILE_MODE) -> None:
        """
        Replace a file atomically (write temp file, fsync, rename).

        A crash leaves either the old or the new content, never a partial file.

        Args:
            path: Destination file
            content: Text or binary content
            mode: Permission bits for the file
        """
        FileUtils.ensure_directory(path.parent)
        data = content.encode("utf-8") if isinstance(content, str) else content

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Atomically wrote file: {path}")

    @staticmethod
    def is_owner_only(path: Path) -> bool:
        """Return True if neither group nor others have any access to the file."""
        file_mode = stat.S_IMODE(path.stat().st_mode)
        return file_mode & 0o077 == 0

    @staticmethod
    def list_directories(path: Path) -> list[Path]:
        """
        List all directories in given path, excluding _trash and hidden folders.

        Args:
            path: Path to search

        Returns:
            Sorted list of directory paths
        """
        if not path.exists():
            return []
        return sorted(p for p in path.iterdir() if p.is_dir() and p.name != "_trash" and not p.name.startswith("."))

    @staticmethod
    def list_files(path: Path, pattern: str = "*") -> list[Path]:
        """
        List all regular files matching pattern in given path.

        Args:
            path: Path to search
            pattern: Glob pattern to match

        Returns:
            Sorted list of file paths
        """
        if not path.exists():
            return []
        return sorted(p for p in path.glob(pattern) if p.is_file())
