"""
Version Manifest Client - Release discovery

Fetches the release list (GitHub Releases format), normalises each release
to VersionInfo, caches the result in memory, and answers version questions:
what is installed, what is newer, and whether a release can be installed here.
"""
import os
import platform
import re
import time
from dataclasses import asdict, dataclass, field
from functools import cmp_to_key, lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog
from packaging import version as pkg_version

from upkeep.config import Settings, get_settings
from upkeep.services.errors import ManifestError

logger = structlog.get_logger(__name__)

# GitHub API constants
GITHUB_API_BASE = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
USER_AGENT = "upkeep-updater/1.0"

FALLBACK_VERSION = "0.0.0"
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".zip")

_SHA256_LABEL = re.compile(r"sha-?256[:\s]+([a-fA-F0-9]{64})", re.IGNORECASE)


@dataclass
class VersionInfo:
    """Normalised metadata for one release"""

    version: str
    release_date: Optional[str] = None
    changelog: str = ""
    release_notes: str = ""
    download_url: str = ""
    checksum: str = ""
    file_size: int = 0
    min_runtime_version: Optional[str] = None
    breaking_changes: bool = False
    requires_manual_steps: bool = False
    asset_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UpdateManifest:
    """Release list as last fetched, newest first"""

    latest_version: Optional[str]
    latest_stable: Optional[str]
    versions: List[VersionInfo] = field(default_factory=list)
    source_url: str = ""


def compare_versions(a: str, b: str) -> int:
    """
    Compare two version strings numerically

    Everything except digits and dots is dropped, so pre-release suffixes
    are ignored ("1.2.0-beta" equals "1.2.0"). Missing components count as 0.

    Returns:
        -1 if a < b, 0 if equal, 1 if a > b
    """

    def _parts(value: str) -> List[int]:
        cleaned = re.sub(r"[^0-9.]", "", value or "")
        return [int(part) if part else 0 for part in cleaned.split(".")]

    left, right = _parts(a), _parts(b)
    length = max(len(left), len(right))
    left += [0] * (length - len(left))
    right += [0] * (length - len(right))

    for x, y in zip(left, right):
        if x < y:
            return -1
        if x > y:
            return 1
    return 0


def extract_checksum(release_notes: str, asset_name: Optional[str]) -> str:
    """
    Extract a SHA256 checksum from release notes

    Looks for patterns like:
    - "SHA256: abc123..."
    - "asset-name.tar.gz: abc123..."
    - Lines in checksums format "abc123  asset-name.tar.gz"

    Returns:
        Lowercase hex digest, or "" when none is found
    """
    if not release_notes:
        return ""

    match = _SHA256_LABEL.search(release_notes)
    if match:
        return match.group(1).lower()

    if asset_name:
        escaped = re.escape(asset_name)
        for pattern in (
            rf"{escaped}\s*:\s*([a-fA-F0-9]{{64}})",
            rf"([a-fA-F0-9]{{64}})\s+\*?{escaped}",
        ):
            match = re.search(pattern, release_notes, re.IGNORECASE)
            if match:
                return match.group(1).lower()

    return ""


class VersionManifestClient:
    """
    Client for the release manifest

    The manifest is cached in memory for settings.manifest_cache_seconds;
    a hit within that window performs no network I/O.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the manifest client

        Args:
            settings: Application settings (defaults to get_settings())
            transport: Optional httpx transport, used by tests
            clock: Monotonic clock used for cache expiry
        """
        self.settings = settings or get_settings()
        self._transport = transport
        self._clock = clock
        self._cached: Optional[UpdateManifest] = None
        self._cached_at: Optional[float] = None

    @property
    def source_url(self) -> str:
        if self.settings.manifest_url:
            return self.settings.manifest_url
        if not self.settings.github_repo:
            return ""
        return f"{GITHUB_API_BASE}/repos/{self.settings.github_repo}/releases"

    @property
    def headers(self) -> Dict[str, str]:
        """Get headers for GitHub API requests"""
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": USER_AGENT,
        }
        if self.settings.github_token:
            headers["Authorization"] = f"Bearer {self.settings.github_token}"
        return headers

    def current_version(self) -> str:
        """Read the installed version from the version marker file"""
        marker = self.settings.resolve(self.settings.version_file)
        try:
            value = marker.read_text().strip()
        except OSError as e:
            logger.error("version_marker_unreadable", path=str(marker), error=str(e))
            return FALLBACK_VERSION
        if not value:
            logger.error("version_marker_empty", path=str(marker))
            return FALLBACK_VERSION
        return value

    def _cache_valid(self) -> bool:
        if self._cached is None or self._cached_at is None:
            return False
        return self._clock() - self._cached_at < self.settings.manifest_cache_seconds

    async def fetch_manifest(self, force: bool = False) -> UpdateManifest:
        """
        Fetch the release manifest

        Args:
            force: Bypass the in-memory cache

        Returns:
            UpdateManifest with releases newest first

        Raises:
            ManifestError: If the release list cannot be fetched or parsed
        """
        if not force and self._cache_valid():
            return self._cached

        url = self.source_url
        if not url:
            raise ManifestError("No release source configured (set GITHUB_REPO or MANIFEST_URL)")

        logger.info("fetching_manifest", url=url, force=force)

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.manifest_timeout_seconds),
                headers=self.headers,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url, params={"per_page": 100})
                response.raise_for_status()
                releases = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("manifest_http_error", url=url, status_code=e.response.status_code)
            raise ManifestError(f"Release source returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("manifest_request_error", url=url, error=str(e))
            raise ManifestError(f"Request failed: {e}") from e
        except ValueError as e:
            logger.error("manifest_invalid_json", url=url, error=str(e))
            raise ManifestError("Release source returned invalid JSON") from e

        if not isinstance(releases, list):
            raise ManifestError("Release source did not return a list of releases")

        manifest = self._parse_releases(releases, url)
        self._cached = manifest
        self._cached_at = self._clock()

        logger.info(
            "manifest_fetched",
            releases=len(manifest.versions),
            latest=manifest.latest_version,
            latest_stable=manifest.latest_stable,
        )
        return manifest

    def _parse_releases(self, releases: List[Dict[str, Any]], url: str) -> UpdateManifest:
        versions = []
        for release in releases:
            # Skip drafts
            if release.get("draft", False):
                continue
            if not release.get("tag_name") and not release.get("name"):
                continue
            versions.append(self._parse_release(release))

        stable = [v for v in versions if "-" not in v.version]
        latest = versions[0].version if versions else None
        return UpdateManifest(
            latest_version=latest,
            latest_stable=stable[0].version if stable else latest,
            versions=versions,
            source_url=url,
        )

    def _parse_release(self, release: Dict[str, Any]) -> VersionInfo:
        asset = None
        for candidate in release.get("assets") or []:
            if candidate.get("name", "").lower().endswith(ARCHIVE_SUFFIXES):
                asset = candidate
                break

        body = release.get("body") or ""
        asset_name = asset.get("name") if asset else None
        lowered = body.lower()

        return VersionInfo(
            version=(release.get("tag_name") or release.get("name")).lstrip("v"),
            release_date=release.get("published_at") or release.get("created_at"),
            changelog=body,
            release_notes=body,
            download_url=(asset or {}).get("browser_download_url") or release.get("zipball_url") or "",
            checksum=extract_checksum(body, asset_name),
            file_size=(asset or {}).get("size") or 0,
            min_runtime_version=self.settings.min_runtime_version,
            breaking_changes="breaking" in lowered,
            requires_manual_steps="manual" in lowered,
            asset_name=asset_name,
        )

    async def find_version(self, version: str) -> Optional[VersionInfo]:
        """Find a release by version string (a leading "v" is ignored)"""
        manifest = await self.fetch_manifest()
        wanted = version.lstrip("v")
        for info in manifest.versions:
            if info.version == wanted:
                return info
        return None

    async def is_update_available(self) -> Dict[str, Any]:
        """Compare the installed version with the latest stable release"""
        manifest = await self.fetch_manifest()
        current = self.current_version()
        latest_stable = manifest.latest_stable

        available = latest_stable is not None and compare_versions(current, latest_stable) < 0
        latest_info = next(
            (info for info in manifest.versions if info.version == latest_stable), None
        )

        return {
            "available": available,
            "current_version": current,
            "latest_version": latest_stable,
            "version_info": latest_info.to_dict() if latest_info else None,
        }

    async def available_updates(self) -> List[VersionInfo]:
        """Releases strictly newer than the installed version, newest first"""
        manifest = await self.fetch_manifest()
        current = self.current_version()
        newer = [v for v in manifest.versions if compare_versions(v.version, current) > 0]
        newer.sort(key=cmp_to_key(lambda x, y: compare_versions(x.version, y.version)), reverse=True)
        return newer

    async def check_compatibility(self, version: str) -> Dict[str, Any]:
        """
        Check whether a release can be installed on this host

        Returns:
            Dict with compatible, issues and warnings
        """
        issues: List[str] = []
        warnings: List[str] = []

        info = await self.find_version(version)
        if info is None:
            issues.append(f"Version {version} not found in manifest")

        min_runtime = (info.min_runtime_version if info else None) or self.settings.min_runtime_version
        runtime = platform.python_version()
        if min_runtime and pkg_version.parse(runtime) < pkg_version.parse(min_runtime):
            issues.append(f"Python {min_runtime}+ required. Current: {runtime}")

        free_mb = _free_space_mb(self.settings.app_root)
        if free_mb is not None and free_mb < self.settings.min_free_space_mb:
            issues.append(
                f"Insufficient disk space. At least {self.settings.min_free_space_mb}MB required, "
                f"{free_mb}MB available."
            )

        if info is not None:
            if info.breaking_changes:
                warnings.append("This version contains breaking changes.")
            if info.requires_manual_steps:
                warnings.append("This update requires manual steps.")

        return {"compatible": not issues, "issues": issues, "warnings": warnings}


def _free_space_mb(path: Path) -> Optional[int]:
    """Get free disk space in MB at the nearest existing ancestor of path (None if unknown)"""
    probe = Path(path)
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    try:
        stat = os.statvfs(probe)
        return (stat.f_bavail * stat.f_frsize) // (1024 * 1024)
    except (OSError, AttributeError) as e:
        # statvfs is unavailable on some platforms
        logger.warning("free_space_unavailable", path=str(probe), error=str(e))
        return None


@lru_cache()
def get_manifest_client() -> VersionManifestClient:
    """Process-wide manifest client so the cache is shared across requests"""
    return VersionManifestClient()
