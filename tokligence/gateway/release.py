"""Release resolver: picks the gateway asset for the running platform."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from tokligence.config import platform_labels
from tokligence.schemas import ArchiveKind, ReleaseAsset

logger = logging.getLogger(__name__)

RELEASES_API = "https://api.github.com/repos/tokligence/tokligence-gateway/releases/tags/{tag}"
USER_AGENT = "Tokligence-Local"
RESOLVE_TIMEOUT = 20.0  # seconds

# Lower sorts first
KIND_PRIORITY = {
    ArchiveKind.TAR_GZ: 0,
    ArchiveKind.ZIP: 1,
    ArchiveKind.RAW: 2,
}


class ProvisioningError(Exception):
    """Base class for errors that stop a binary from being provisioned."""

    pass


class ResolveTransportError(ProvisioningError):
    """Raised when release metadata cannot be fetched."""

    pass


class NoReleaseFound(ProvisioningError):
    """Raised when the release tag does not exist."""

    def __init__(self, tag: str):
        super().__init__(f"No release found for tag '{tag}'")
        self.tag = tag


class NoMatchingAsset(ProvisioningError):
    """Raised when no asset matches the running OS and architecture."""

    def __init__(self, os_label: str, arch_labels: list[str], asset_names: list[str]):
        found = ", ".join(asset_names) if asset_names else "none"
        super().__init__(
            f"No matching asset for {os_label}/{'|'.join(arch_labels)}. Found: {found}"
        )
        self.os_label = os_label
        self.arch_labels = arch_labels
        self.asset_names = asset_names


def archive_kind(name: str) -> ArchiveKind:
    """Infer the packaging of an asset from its file name."""
    lower = name.lower()
    if lower.endswith(".tar.gz") or lower.endswith(".tgz"):
        return ArchiveKind.TAR_GZ
    if lower.endswith(".zip"):
        return ArchiveKind.ZIP
    return ArchiveKind.RAW


def select_asset(
    assets: list[dict[str, Any]],
    os_label: str,
    arch_labels: list[str],
) -> ReleaseAsset:
    """Select the preferred asset for a platform.

    Args:
        assets: Release assets as returned by the API ({name, browser_download_url})
        os_label: Canonical OS label (windows, darwin, linux)
        arch_labels: Architecture aliases for the host

    Returns:
        The matching asset, preferring .tar.gz over .zip over a raw file

    Raises:
        NoMatchingAsset: If no asset names both the OS and an architecture alias
    """
    names = [str(a.get("name") or "") for a in assets if isinstance(a, dict)]

    candidates = []
    for asset in assets:
        if not isinstance(asset, dict):
            continue
        name = str(asset.get("name") or "")
        url = asset.get("browser_download_url")
        lower = name.lower()
        if not name or not url or os_label not in lower:
            continue
        if not any(alias in lower for alias in arch_labels):
            continue
        candidates.append(ReleaseAsset(name=name, download_url=str(url), kind=archive_kind(name)))

    if not candidates:
        raise NoMatchingAsset(os_label, arch_labels, [n for n in names if n])

    # sorted() is stable, so list order breaks ties within a kind
    return sorted(candidates, key=lambda a: KIND_PRIORITY[a.kind])[0]


class ReleaseResolver:
    """Queries the release feed for a tag and selects the host's asset."""

    def __init__(
        self,
        api_template: str = RELEASES_API,
        system: str | None = None,
        machine: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_template = api_template
        self.os_label, self.arch_labels = platform_labels(system, machine)
        self._transport = transport

    async def fetch_assets(self, tag: str) -> list[dict[str, Any]]:
        """Fetch the raw asset list of a release."""
        url = self.api_template.format(tag=quote(tag, safe=""))
        headers = {"User-Agent": USER_AGENT, "Accept": "application/vnd.github+json"}

        try:
            async with httpx.AsyncClient(timeout=RESOLVE_TIMEOUT, transport=self._transport) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch release metadata from {url}: {e}")
            raise ResolveTransportError(f"Failed to fetch release metadata: {e}") from e

        if response.status_code == 404:
            raise NoReleaseFound(tag)
        if not response.is_success:
            raise ResolveTransportError(
                f"Release metadata request returned HTTP {response.status_code} for {url}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ResolveTransportError(f"Release metadata is not valid JSON: {e}") from e

        assets = data.get("assets") if isinstance(data, dict) else None
        return assets if isinstance(assets, list) else []

    async def resolve(self, tag: str) -> ReleaseAsset:
        """Resolve a version tag to the asset for this host."""
        assets = await self.fetch_assets(tag)
        asset = select_asset(assets, self.os_label, self.arch_labels)
        logger.info(f"Resolved {tag} to {asset.name} ({asset.kind.value})")
        return asset
