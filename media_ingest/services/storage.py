"""
Storage Manager
Temp staging, atomic publish and deletion of media files under one root
"""

import os
import shutil
import uuid
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple

import psutil

from ..config import get_settings
from ..utils.exceptions import DiskSpaceError, PathTraversalError, StorageError, UploadValidationError, ValidationReason
from ..utils.logger import get_logger

logger = get_logger()

TEMP_DIRNAME = "temp"
FINAL_DIRNAME = "final"
OUTPUT_DIRNAME = "output"
SOURCE_STEM = "source"

# Headroom kept free on the volume on top of the bytes being written
DISK_HEADROOM_BYTES = 64 * 1024 * 1024


def safe_component(name: str) -> str:
    """
    Validate a single user-influenced path component.

    Rejects empty names, dot segments, separators, NUL bytes and anything
    that would be absolute on this platform.
    """
    if not name or name in (".", ".."):
        raise PathTraversalError(name)
    if "/" in name or "\\" in name or "\x00" in name:
        raise PathTraversalError(name)
    if os.path.isabs(name) or Path(name).drive:
        raise PathTraversalError(name)
    return name


def safe_extension(filename: Optional[str]) -> str:
    """Lower-case extension without the dot, or "" when there is none"""
    if not filename:
        return ""
    suffix = Path(filename.replace("\\", "/")).suffix
    return suffix[1:].lower() if suffix else ""


class StorageManager:
    """Places every file the pipeline touches under `root`"""

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.temp_root = self.root / TEMP_DIRNAME
        self.final_root = self.root / FINAL_DIRNAME
        self.temp_root.mkdir(parents=True, exist_ok=True)
        self.final_root.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Path construction
    # =========================================================================

    def _contained(self, path: Path) -> Path:
        resolved = path.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise PathTraversalError(str(path))
        return resolved

    def temp_dir(self, upload_id: str) -> Path:
        return self._contained(self.temp_root / safe_component(upload_id))

    def output_dir(self, upload_id: str) -> Path:
        return self.temp_dir(upload_id) / OUTPUT_DIRNAME

    def source_path(self, upload_id: str, extension: str) -> Path:
        name = f"{SOURCE_STEM}.{safe_component(extension)}" if extension else SOURCE_STEM
        return self.temp_dir(upload_id) / name

    def final_dir(self, slug: str) -> Path:
        return self._contained(self.final_root / safe_component(slug))

    def resolve(self, base: Path, *parts: str) -> Path:
        """Join sanitized components onto `base`, staying inside the root"""
        path = base
        for part in parts:
            path = path / safe_component(part)
        return self._contained(path)

    # =========================================================================
    # Disk space
    # =========================================================================

    def ensure_free_space(self, required_bytes: int):
        """Raise DiskSpaceError if the storage volume cannot take `required_bytes`"""
        usage = psutil.disk_usage(str(self.root))
        if usage.free < required_bytes + DISK_HEADROOM_BYTES:
            raise DiskSpaceError(str(self.root), required_bytes, usage.free)

    # =========================================================================
    # Staging
    # =========================================================================

    async def stage_stream(
        self,
        chunks: AsyncIterator[bytes],
        upload_id: str,
        extension: str,
        max_bytes: int,
        expected_bytes: Optional[int] = None
    ) -> Tuple[Path, int]:
        """
        Write an upload stream to temp storage.

        Stops as soon as the running total passes `max_bytes` and removes
        the partial directory, so a rejected upload leaves nothing behind.

        Returns:
            Tuple of (file_path, bytes_written)
        """
        target = self.source_path(upload_id, extension)
        if expected_bytes:
            self.ensure_free_space(expected_bytes)

        bytes_written = 0
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as output_file:
                async for chunk in chunks:
                    bytes_written += len(chunk)
                    if bytes_written > max_bytes:
                        raise UploadValidationError(
                            ValidationReason.TOO_LARGE,
                            f"File exceeds max upload size ({max_bytes} bytes)",
                            max_bytes=max_bytes,
                        )
                    output_file.write(chunk)
        except OSError as exc:
            self.delete(target.parent)
            raise StorageError(f"Failed to stage upload: {exc}", path=str(target)) from exc
        except BaseException:
            self.delete(target.parent)
            raise

        logger.info(f"Staged upload {upload_id}: {bytes_written} bytes at {target}")
        return target, bytes_written

    def stage_bytes(self, data: bytes, path: Path) -> Path:
        """Write `data` to `path`, which must live under the storage root"""
        target = self._contained(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"Failed to write {target}: {exc}", path=str(target)) from exc
        return target

    # =========================================================================
    # Publish
    # =========================================================================

    def finalize(self, temp_dir: Path, final_dir: Path) -> Path:
        """
        Publish `temp_dir` as `final_dir` in one rename.

        Content is first moved into a hidden sibling of `final_dir` and only
        that staging directory is renamed into place, so readers see either
        no final directory or a complete one.
        """
        source = self._contained(temp_dir)
        target = self._contained(final_dir)
        if not source.is_dir():
            raise StorageError(f"Nothing to finalize at {source}", path=str(source))
        if target.exists():
            raise StorageError(f"Final directory already exists: {target}", path=str(target))

        target.parent.mkdir(parents=True, exist_ok=True)
        if source.stat().st_dev != target.parent.stat().st_dev:
            # Cross-device moves copy the whole tree
            self.ensure_free_space(_directory_size(source))

        staging = target.parent / f".{target.name}.staging-{uuid.uuid4().hex[:8]}"
        try:
            shutil.move(str(source), str(staging))
            os.rename(staging, target)
        except OSError as exc:
            if staging.exists() and not source.exists():
                shutil.move(str(staging), str(source))
            raise StorageError(f"Failed to finalize {source} -> {target}: {exc}", path=str(target)) from exc

        logger.info(f"Finalized {source} -> {target}")
        return target

    def rollback_finalize(self, final_dir: Path, temp_dir: Path):
        """Move a published directory back to temp so finalizing can be retried"""
        source = self._contained(final_dir)
        target = self._contained(temp_dir)
        if not source.exists():
            return
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
        except OSError as exc:
            raise StorageError(f"Failed to roll back {source}: {exc}", path=str(source)) from exc
        logger.warning(f"Rolled back finalized directory {source} -> {target}")

    # =========================================================================
    # Deletion & listing
    # =========================================================================

    def delete(self, path: Path) -> bool:
        """Remove a file or directory tree. Missing paths are not an error."""
        target = self._contained(path)
        if target == self.root or target in (self.temp_root, self.final_root):
            raise PathTraversalError(str(path))
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
            else:
                return False
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Failed to delete {target}: {exc}", path=str(target)) from exc
        logger.debug(f"Deleted {target}")
        return True

    def list_temp_entries(self) -> List[Path]:
        """Per-upload directories currently in temp storage"""
        if not self.temp_root.exists():
            return []
        return sorted(entry for entry in self.temp_root.iterdir() if entry.is_dir())

    def url_for(self, prefix: str, slug: str, *parts: str) -> str:
        """Public URL of a published asset"""
        safe_component(slug)
        for part in parts:
            safe_component(part)
        return "/".join([prefix.rstrip("/"), slug, *parts])


def _directory_size(path: Path) -> int:
    total = 0
    for entry in path.rglob("*"):
        if entry.is_file():
            total += entry.stat().st_size
    return total


_storage_manager: Optional[StorageManager] = None


def get_storage_manager() -> StorageManager:
    """Return singleton storage manager."""
    global _storage_manager
    if _storage_manager is None:
        _storage_manager = StorageManager(get_settings().storage_root)
    return _storage_manager
