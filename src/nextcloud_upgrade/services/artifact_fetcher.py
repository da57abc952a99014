"""
Artifact Fetcher - Downloads release archives and their digests

Handles:
- Building deterministic archive and digest URLs
- Streaming downloads through a partial file
- Removing partial files on any failure
- Verifying the archive before handing it to the swap
"""
from pathlib import Path
from typing import Callable, Optional, Union

import httpx
import structlog

from nextcloud_upgrade.errors import ChecksumMismatch, DownloadError
from nextcloud_upgrade.models import Artifact, ArchiveFormat, DigestAlgorithm, ReleaseTarget
from nextcloud_upgrade.services import checksum

logger = structlog.get_logger(__name__)

PRODUCT = "nextcloud"
DEFAULT_TIMEOUT = 30.0
DOWNLOAD_TIMEOUT = 300.0
CHUNK_SIZE = 8192


def archive_name(download_version: str, archive_format: Union[ArchiveFormat, str]) -> str:
    return f"{PRODUCT}-{download_version}.{ArchiveFormat(archive_format).value}"


def archive_url(base_url: str, download_version: str, archive_format: Union[ArchiveFormat, str]) -> str:
    return f"{base_url.rstrip('/')}/{archive_name(download_version, archive_format)}"


def digest_url(url: str, algorithm: Union[DigestAlgorithm, str]) -> str:
    return f"{url}.{DigestAlgorithm(algorithm).value}"


class ArtifactFetcher:
    """
    Fetches and verifies release artifacts

    Args:
        release_base_url: Directory URL of the release server
        download_dir: Local directory receiving archives
        force_download: Re-download an archive already present locally
        transport: Optional httpx transport, used by tests
    """

    def __init__(
        self,
        release_base_url: str,
        download_dir: Path,
        force_download: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.release_base_url = release_base_url
        self.download_dir = Path(download_dir)
        self.force_download = force_download
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            transport=self.transport,
            timeout=httpx.Timeout(DEFAULT_TIMEOUT),
            follow_redirects=True,
        )

    def download(
        self,
        url: str,
        destination: Path,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> Path:
        """
        Stream url into destination

        The body is written to ``<destination>.part`` and renamed once
        complete, so destination never holds a truncated file.

        Raises:
            DownloadError: If the request fails; no partial file is left behind
        """
        logger.info("downloading", url=url, destination=str(destination))
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_name(destination.name + ".part")

        try:
            with self._client() as client:
                with client.stream("GET", url, timeout=httpx.Timeout(DOWNLOAD_TIMEOUT)) as response:
                    response.raise_for_status()

                    total_size = int(response.headers.get("content-length", 0))
                    downloaded = 0

                    with open(partial, "wb") as f:
                        for chunk in response.iter_bytes(chunk_size=CHUNK_SIZE):
                            f.write(chunk)
                            downloaded += len(chunk)
                            if progress_callback:
                                progress_callback(downloaded, total_size)

            partial.replace(destination)
            logger.info("download_complete", url=url, size=downloaded)
            return destination

        except httpx.HTTPStatusError as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Download of {url} failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Download of {url} failed: {e}") from e
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise DownloadError(f"Could not write {destination}: {e}") from e
        except BaseException:
            # interrupted mid-transfer
            partial.unlink(missing_ok=True)
            raise

    def plan(
        self,
        target: ReleaseTarget,
        archive_format: Union[ArchiveFormat, str] = ArchiveFormat.TAR_BZ2,
        digest_algorithm: Union[DigestAlgorithm, str] = DigestAlgorithm.SHA256,
    ) -> Artifact:
        """Return the Artifact fetch() would produce, without any network or disk access"""
        archive_format = ArchiveFormat(archive_format)
        digest_algorithm = DigestAlgorithm(digest_algorithm)
        archive_path = self.download_dir / archive_name(target.download_version, archive_format)
        return Artifact(
            archive_path=archive_path,
            digest_path=archive_path.with_name(f"{archive_path.name}.{digest_algorithm.value}"),
            format=archive_format,
            digest_algorithm=digest_algorithm,
        )

    def fetch(
        self,
        target: ReleaseTarget,
        archive_format: Union[ArchiveFormat, str] = ArchiveFormat.TAR_BZ2,
        digest_algorithm: Union[DigestAlgorithm, str] = DigestAlgorithm.SHA256,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> Artifact:
        """
        Download and verify the archive for a release

        Returns:
            Verified Artifact

        Raises:
            DownloadError: If the archive or digest cannot be downloaded
            ChecksumMismatch: If verification fails; both files are removed
        """
        artifact = self.plan(target, archive_format, digest_algorithm)
        archive_path, digest_path = artifact.archive_path, artifact.digest_path
        url = archive_url(self.release_base_url, target.download_version, artifact.format)

        if archive_path.exists() and not self.force_download:
            logger.info("archive_reused", path=str(archive_path))
        else:
            self.download(url, archive_path, progress_callback=progress_callback)

        # The digest is always fetched fresh, even for a reused archive
        try:
            self.download(digest_url(url, artifact.digest_algorithm), digest_path)
        except DownloadError:
            archive_path.unlink(missing_ok=True)
            raise

        try:
            checksum.verify(archive_path, digest_path, artifact.digest_algorithm)
        except ChecksumMismatch:
            self.discard(artifact)
            raise

        return artifact

    def discard(self, artifact: Artifact) -> None:
        """Delete a downloaded archive and its digest"""
        for path in (artifact.archive_path, artifact.digest_path):
            path.unlink(missing_ok=True)
        logger.info("artifact_discarded", archive=str(artifact.archive_path))
