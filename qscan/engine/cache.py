"""
Local cache of the qscanner engine binary.

The engine ships as a gzip-compressed executable. It is decompressed once
into a cache directory under a name keyed by the archive fingerprint and
reused afterwards. Installation writes to a scratch file and renames it into
place, so concurrent installers either converge on the same file or see a
complete one.
"""

import gzip
import hashlib
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Optional, Union

from qscan.exceptions import EngineError, EngineNotFoundError

logger = logging.getLogger(__name__)

ENGINE_NAME = "qscanner"
FINGERPRINT_LENGTH = 16
_CHUNK_SIZE = 1024 * 1024


def default_cache_dir() -> Path:
    """$QSCAN_CACHE_DIR, else $XDG_CACHE_HOME/qscan, else ~/.cache/qscan."""
    override = os.getenv("QSCAN_CACHE_DIR")
    if override:
        return Path(override)
    xdg = os.getenv("XDG_CACHE_HOME")
    base = Path(xdg) if xdg else Path.home() / ".cache"
    return base / "qscan"


def is_executable_file(path: Union[str, Path]) -> bool:
    path = Path(path)
    return path.is_file() and os.access(path, os.X_OK)


class EngineCache:
    """
    Install-once cache for a compressed engine archive.

    Example:
        cache = EngineCache(tmp_path / "cache", "qscanner-linux-amd64.gz")
        engine = cache.install()
    """

    def __init__(self, cache_dir: Union[str, Path], archive: Union[str, Path]):
        self.cache_dir = Path(cache_dir)
        self.archive = Path(archive)
        self._fingerprint: Optional[str] = None

    def fingerprint(self) -> str:
        """Leading hex digits of the archive's SHA-256."""
        if self._fingerprint is None:
            digest = hashlib.sha256()
            try:
                with open(self.archive, "rb") as f:
                    for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                        digest.update(chunk)
            except OSError as e:
                raise EngineNotFoundError(f"cannot read engine archive {self.archive}: {e}") from e
            self._fingerprint = digest.hexdigest()[:FINGERPRINT_LENGTH]
        return self._fingerprint

    def binary_path(self) -> Path:
        return self.cache_dir / f"{ENGINE_NAME}-{self.fingerprint()}"

    def install(self) -> Path:
        """
        Return the cached engine, decompressing it first if needed.

        Raises:
            EngineNotFoundError: The archive cannot be read
            EngineError: The binary could not be written into the cache
        """
        target = self.binary_path()
        if is_executable_file(target):
            return target

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EngineError(f"failed to create cache directory {self.cache_dir}: {e}") from e

        fd, scratch = tempfile.mkstemp(prefix=f"{ENGINE_NAME}-", suffix=".part", dir=self.cache_dir)
        try:
            try:
                with os.fdopen(fd, "wb") as out, gzip.open(self.archive, "rb") as src:
                    shutil.copyfileobj(src, out, _CHUNK_SIZE)
                os.chmod(scratch, 0o755)
            except (OSError, EOFError) as e:
                raise EngineError(f"failed to extract engine from {self.archive}: {e}") from e

            try:
                os.replace(scratch, target)
            except OSError as e:
                # Cross-device or similar; fall back to copying
                logger.debug(f"Rename into cache failed ({e}), copying instead")
                try:
                    shutil.copy2(scratch, target)
                    os.chmod(target, os.stat(target).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                except OSError as copy_error:
                    raise EngineError(f"failed to move engine into cache: {e}") from copy_error
        finally:
            if os.path.exists(scratch):
                os.remove(scratch)

        logger.info(f"Installed engine into {target}")
        return target


def resolve_engine(
    engine_path: Optional[str] = None,
    engine_archive: Optional[str] = None,
    cache_dir: Optional[Union[str, Path]] = None,
) -> Path:
    """
    Locate the engine binary to run.

    Order: explicit path, cached install from an archive, qscanner on PATH.

    Raises:
        EngineNotFoundError: No engine could be found
    """
    if engine_path:
        if not is_executable_file(engine_path):
            raise EngineNotFoundError(f"engine {engine_path} is not an executable file")
        return Path(engine_path)

    if engine_archive:
        cache = EngineCache(cache_dir or default_cache_dir(), engine_archive)
        return cache.install()

    found = shutil.which(ENGINE_NAME)
    if found:
        return Path(found)

    raise EngineNotFoundError(
        f"{ENGINE_NAME} not found. Set --engine, QSCAN_ENGINE or QSCAN_ENGINE_ARCHIVE"
    )
