import hashlib
import logging
import zipfile
from pathlib import Path

logger = logging.getLogger("backupd.archive")


def checksum(path) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            sha.update(chunk)
    return sha.hexdigest()


def pack_zip(files: list[tuple[Path, str]], destination: Path) -> int:
    """Write ``files`` as (source, name in archive) pairs into one zip, return its size."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as archive:
        for source, arcname in files:
            logger.debug("Adding %s as %s", source, arcname)
            archive.write(source, arcname=arcname)
    size = destination.stat().st_size
    logger.info("Compressed %d file(s) into %s (%d bytes)", len(files), destination, size)
    return size
