"""
Checksum Verifier - Validates downloaded archives against published digests

Digest files follow the coreutils ``<hex>  <filename>`` layout and may list
several artifacts; only the line naming the local archive is used.
"""
import hashlib
from pathlib import Path
from typing import Optional, Union

import structlog

from nextcloud_upgrade.errors import ChecksumMismatch
from nextcloud_upgrade.models import DigestAlgorithm

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 8192


def hash_file(path: Path, algorithm: Union[DigestAlgorithm, str]) -> str:
    """Calculate the hex digest of a file"""
    digest = hashlib.new(DigestAlgorithm(algorithm).value)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def find_digest(digest_text: str, filename: str) -> Optional[str]:
    """
    Find the digest published for filename

    Args:
        digest_text: Contents of the digest file
        filename: Basename of the local archive

    Returns:
        Lower-case hex digest, or None if no line names the file
    """
    for line in digest_text.splitlines():
        fields = line.strip().split(None, 1)
        if len(fields) != 2:
            continue
        hex_digest, name = fields
        # "*" marks binary mode in coreutils output
        name = name.strip().lstrip("*")
        if Path(name).name == filename:
            return hex_digest.lower()
    return None


def verify(archive_path: Path, digest_path: Path, algorithm: Union[DigestAlgorithm, str]) -> str:
    """
    Verify an archive against its digest file

    Returns:
        The verified hex digest

    Raises:
        ChecksumMismatch: If no line names the archive or the digest differs
    """
    archive_path = Path(archive_path)
    digest_text = Path(digest_path).read_text(encoding="utf-8", errors="replace")

    expected = find_digest(digest_text, archive_path.name)
    if expected is None:
        logger.error("digest_line_missing", archive=archive_path.name, digest_file=str(digest_path))
        raise ChecksumMismatch(f"No {DigestAlgorithm(algorithm).value} digest listed for {archive_path.name}")

    actual = hash_file(archive_path, algorithm)
    if actual != expected:
        logger.error("checksum_mismatch", archive=archive_path.name, expected=expected, actual=actual)
        raise ChecksumMismatch(
            f"Checksum mismatch for {archive_path.name}: expected {expected}, got {actual}"
        )

    logger.info("checksum_verified", archive=archive_path.name, checksum=actual[:16])
    return actual
