"""
Package Fetcher - Streams release artifacts to disk with SHA256 verification
"""
import hashlib
from pathlib import Path
from typing import Callable, Optional

import httpx
import structlog

from upkeep.services.errors import DownloadError, IntegrityError

logger = structlog.get_logger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT = 300.0
CHUNK_SIZE = 8192

# One hop covers GitHub's redirect from the asset URL to its storage backend
MAX_REDIRECTS = 1


def sha256_file(path: Path) -> str:
    """Calculate SHA256 checksum of a file"""
    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


class PackageFetcher:
    """Downloads a single artifact and verifies it"""

    def __init__(
        self,
        timeout: float = DEFAULT_DOWNLOAD_TIMEOUT,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    async def download(
        self,
        url: str,
        destination: Path,
        expected_checksum: Optional[str] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> Path:
        """
        Download an artifact

        Args:
            url: Artifact URL
            destination: File to write
            expected_checksum: Optional SHA256 hex digest (case-insensitive)
            on_progress: Optional callback(percent), called when content-length is known

        Returns:
            Path to the downloaded file

        Raises:
            IntegrityError: If checksum verification fails (the file is removed)
            DownloadError: If the download fails for any other reason
        """
        destination = Path(destination)
        logger.info("downloading_artifact", url=url, destination=str(destination))

        sha256_hash = hashlib.sha256()
        downloaded = 0
        last_percent = -1

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)

            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=self.headers,
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    total_size = int(response.headers.get("content-length", 0) or 0)

                    with open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes(chunk_size=CHUNK_SIZE):
                            f.write(chunk)
                            sha256_hash.update(chunk)
                            downloaded += len(chunk)

                            if on_progress and total_size:
                                percent = min(100, round(downloaded * 100 / total_size))
                                if percent != last_percent:
                                    last_percent = percent
                                    on_progress(percent)

        except httpx.HTTPStatusError as e:
            destination.unlink(missing_ok=True)
            logger.error("download_http_error", url=url, status_code=e.response.status_code)
            raise DownloadError(f"Download failed: {e.response.status_code}") from e
        except httpx.TooManyRedirects as e:
            destination.unlink(missing_ok=True)
            logger.error("download_too_many_redirects", url=url)
            raise DownloadError("Download failed: too many redirects") from e
        except httpx.HTTPError as e:
            destination.unlink(missing_ok=True)
            logger.error("download_request_error", url=url, error=str(e))
            raise DownloadError(f"Download failed: {e}") from e
        except OSError as e:
            destination.unlink(missing_ok=True)
            logger.error("download_write_error", destination=str(destination), error=str(e))
            raise DownloadError(f"Could not write {destination}: {e}") from e

        actual_checksum = sha256_hash.hexdigest()
        if expected_checksum:
            if actual_checksum.lower() != expected_checksum.strip().lower():
                # Delete the corrupted file
                destination.unlink(missing_ok=True)
                logger.error(
                    "checksum_mismatch",
                    expected=expected_checksum,
                    actual=actual_checksum,
                )
                raise IntegrityError(expected_checksum, actual_checksum)
            logger.info("checksum_verified", checksum=actual_checksum[:16])

        logger.info("download_complete", size=downloaded, checksum=actual_checksum[:16])
        return destination
