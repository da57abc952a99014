"""
Version Resolver - Asks the update server which release to install

Builds the updater_server query for the running installation, extracts the
offered version and derives the identifier used in archive names.
"""
import re
import sys
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote

import httpx
import structlog
from packaging import version as pkg_version

from nextcloud_upgrade.errors import ConfigError, NetworkError, ParseError
from nextcloud_upgrade.models import InstallationState, ReleaseTarget

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
USER_AGENT = "Nextcloud Updater"
VERSION_PATTERN = re.compile(r"<version>(.*?)</version>", re.DOTALL)
RELEASE_VERSION = re.compile(r"^\d+(\.\d+){1,3}$")
LATEST = "latest"

# Resolution statuses
STATUS_UPDATE = "update"
STATUS_NO_UPDATE = "no_update"
STATUS_UP_TO_DATE = "up_to_date"


@dataclass(frozen=True)
class ResolveResult:
    """Outcome of a resolution; target is set only when an upgrade should run"""

    status: str
    target: Optional[ReleaseTarget] = None

    @property
    def should_upgrade(self) -> bool:
        return self.status == STATUS_UPDATE


def build_query(installation: InstallationState, runtime: Tuple[int, int, int]) -> str:
    """
    Encode the installation into the updater_server query string

    The server expects fields joined by "x", with the dots of the current
    version replaced the same way.
    """
    major, minor, micro = runtime
    return "{version}xxx{channel}xx{build}x{major}x{minor}x{micro}".format(
        version=installation.current_version.replace(".", "x"),
        channel=installation.channel,
        build=quote(installation.build_id, safe=""),
        major=major,
        minor=minor,
        micro=micro,
    )


def parse_version_token(body: str) -> str:
    """
    Extract the offered version from an update server response

    Raises:
        ParseError: If the body carries no <version> element, or the element
            is not a dotted release number
    """
    match = VERSION_PATTERN.search(body)
    if not match or not match.group(1).strip():
        raise ParseError("Update server response did not contain a <version> element")
    token = match.group(1).strip()
    if not RELEASE_VERSION.match(token):
        raise ParseError(f"Update server offered an invalid version: {token!r}")
    return token


class VersionResolver:
    """
    Resolves the release a run should install

    Args:
        update_server_url: Base URL of the updater_server endpoint
        runtime: (major, minor, micro) reported to the server; defaults to
            the running interpreter when not supplied
        transport: Optional httpx transport, used by tests
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        update_server_url: str,
        runtime: Optional[Tuple[int, int, int]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.update_server_url = update_server_url
        self.runtime = runtime or tuple(sys.version_info[:3])
        self.transport = transport
        self.timeout = timeout

    def _fetch(self, query: str) -> str:
        url = f"{self.update_server_url}?version={query}"
        try:
            with httpx.Client(
                transport=self.transport,
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
            ) as client:
                response = client.get(url)
                response.raise_for_status()
                return response.text
        except httpx.HTTPStatusError as e:
            logger.error("update_server_error", status_code=e.response.status_code, url=url)
            raise NetworkError(f"Update server returned {e.response.status_code} for {url}") from e
        except httpx.RequestError as e:
            logger.error("update_server_unreachable", url=url, error=str(e))
            raise NetworkError(f"Could not do request to updater server at '{url}': {e}") from e

    def resolve(self, installation: InstallationState, explicit_version: Optional[str] = None) -> ResolveResult:
        """
        Decide which release to install

        Args:
            installation: Snapshot of the running installation
            explicit_version: Version requested by the operator; skips the
                server unless it is None or "latest"

        Returns:
            ResolveResult with status update, no_update or up_to_date

        Raises:
            NetworkError: If the update server cannot be reached
            ParseError: If the server answered without a valid version
            ConfigError: If the explicit version is malformed or a downgrade
        """
        requested = explicit_version.strip() if explicit_version else None
        if requested and requested.lower() != LATEST:
            if not RELEASE_VERSION.match(requested):
                raise ConfigError(f"Requested version {requested!r} is not a release number like 29.0.5")
            resolved = requested
            _refuse_downgrade(installation.current_version, resolved)
            logger.info("version_requested", version=resolved)
        else:
            query = build_query(installation, self.runtime)
            logger.info("checking_for_updates", current_version=installation.current_version, channel=installation.channel)
            body = self._fetch(query)
            if not body.strip():
                logger.info("no_update_available")
                return ResolveResult(status=STATUS_NO_UPDATE)
            resolved = parse_version_token(body)

        if resolved == installation.current_version:
            logger.info("already_up_to_date", version=resolved)
            return ResolveResult(status=STATUS_UP_TO_DATE)

        target = ReleaseTarget.from_resolved(resolved, requested_version=explicit_version)
        logger.info(
            "update_available",
            resolved_version=target.resolved_version,
            download_version=target.download_version,
        )
        return ResolveResult(status=STATUS_UPDATE, target=target)


def _refuse_downgrade(current: str, requested: str) -> None:
    try:
        if pkg_version.parse(requested) < pkg_version.parse(current):
            raise ConfigError(f"Requested version {requested} is older than installed {current}; downgrades are not supported")
    except pkg_version.InvalidVersion:
        logger.warning("version_comparison_failed", current=current, requested=requested)
