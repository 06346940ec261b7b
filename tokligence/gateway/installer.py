"""Archive installer and binary provisioning for the gateway executable."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Callable

import httpx

from tokligence.config import BINARY_PREFIX, binary_name
from tokligence.consent import ConsentDenied, ConsentGate
from tokligence.gateway.release import ProvisioningError, ReleaseResolver
from tokligence.schemas import ArchiveKind, ConsentAction, InstalledBinary, ReleaseAsset

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 300.0  # seconds
DOWNLOAD_CHUNK_SIZE = 64 * 1024
USER_AGENT = "Tokligence-Local"

ProgressCallback = Callable[[str], None]


class DownloadFailed(ProvisioningError):
    """Raised when the asset download fails."""

    pass


class ExtractFailed(ProvisioningError):
    """Raised when a downloaded archive cannot be unpacked."""

    pass


class BinaryNotFoundAfterExtract(ProvisioningError):
    """Raised when no gateway executable is present after extraction."""

    def __init__(self, directory: Path, entries: list[str]):
        listing = ", ".join(entries) if entries else "empty"
        super().__init__(f"Binary not found after extraction in {directory} (contents: {listing})")
        self.directory = directory
        self.entries = entries


def locate_binary(directory: Path | str, name: str | None = None) -> Path | None:
    """Find the gateway executable in a managed directory.

    Returns the canonical path if it exists, otherwise the first file (by
    name) that starts with the binary prefix, otherwise None.
    """
    directory = Path(directory)
    canonical = directory / (name or binary_name())
    if canonical.is_file():
        return canonical
    if not directory.is_dir():
        return None
    for entry in sorted(directory.iterdir()):
        if entry.is_file() and entry.name.startswith(BINARY_PREFIX):
            return entry
    return None


def is_executable(path: Path | str | None) -> bool:
    """Check that a path is a file the current user may execute."""
    return path is not None and os.path.isfile(path) and os.access(path, os.X_OK)


def _extract_tar(archive: Path, destination: Path) -> None:
    with tarfile.open(archive, "r:*") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(destination, filter="data")
        else:
            tar.extractall(destination)


def _extract_zip(archive: Path, destination: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        zf.extractall(destination)


class ArchiveInstaller:
    """Downloads a release asset and installs the executable it contains."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    async def download(self, asset: ReleaseAsset, target: Path) -> int:
        """Stream an asset to a local file, returning the byte count."""
        written = 0
        try:
            async with httpx.AsyncClient(
                timeout=DOWNLOAD_TIMEOUT,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                async with client.stream(
                    "GET", asset.download_url, headers={"User-Agent": USER_AGENT}
                ) as response:
                    if not response.is_success:
                        raise DownloadFailed(
                            f"Download of {asset.name} returned HTTP {response.status_code}"
                        )
                    with open(target, "wb") as fh:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            fh.write(chunk)
                            written += len(chunk)
        except httpx.HTTPError as e:
            logger.error(f"Download of {asset.download_url} failed: {e}")
            raise DownloadFailed(f"Download of {asset.name} failed: {e}") from e

        logger.info(f"Downloaded {asset.name} ({written} bytes)")
        return written

    async def install(
        self,
        asset: ReleaseAsset,
        destination_dir: Path | str,
        on_progress: ProgressCallback | None = None,
    ) -> InstalledBinary:
        """Download, extract and mark the gateway executable.

        Args:
            asset: Asset selected by the release resolver
            destination_dir: Managed directory for the binary
            on_progress: Optional callback receiving step messages

        Returns:
            InstalledBinary describing the executable

        Raises:
            DownloadFailed: If the asset cannot be downloaded
            ExtractFailed: If the archive is corrupt or cannot be written
            BinaryNotFoundAfterExtract: If no executable is found afterwards
        """
        report = on_progress or (lambda message: None)
        destination = Path(destination_dir)
        destination.mkdir(parents=True, exist_ok=True)
        target = destination / binary_name()

        fd, tmp_name = tempfile.mkstemp(prefix="tokligence-", suffix=f"-{asset.name}")
        os.close(fd)
        tmp_file = Path(tmp_name)

        try:
            report(f"Downloading {asset.name}...")
            await self.download(asset, tmp_file)

            report("Extracting...")
            try:
                if asset.kind == ArchiveKind.TAR_GZ:
                    await asyncio.to_thread(_extract_tar, tmp_file, destination)
                elif asset.kind == ArchiveKind.ZIP:
                    await asyncio.to_thread(_extract_zip, tmp_file, destination)
                else:
                    await asyncio.to_thread(shutil.copyfile, tmp_file, target)
            except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
                logger.error(f"Failed to unpack {asset.name}: {e}")
                raise ExtractFailed(f"Failed to unpack {asset.name}: {e}") from e

            final = locate_binary(destination)
            if final is None:
                entries = sorted(p.name for p in destination.iterdir())
                raise BinaryNotFoundAfterExtract(destination, entries)
            if final != target:
                logger.info(f"Adopting {final.name} as the gateway binary")

            try:
                final.chmod(0o755)
            except OSError as e:
                logger.warning(f"Could not mark {final} executable: {e}")
        finally:
            tmp_file.unlink(missing_ok=True)

        report("Done!")
        installed = InstalledBinary(path=str(final.resolve()), executable=is_executable(final))
        logger.info(f"Installed gateway binary at {installed.path}")
        return installed


class BinaryProvisioner:
    """Consent-gated resolve-and-install of the gateway binary."""

    def __init__(
        self,
        consent: ConsentGate,
        resolver: ReleaseResolver | None = None,
        installer: ArchiveInstaller | None = None,
    ):
        self.consent = consent
        self.resolver = resolver or ReleaseResolver()
        self.installer = installer or ArchiveInstaller()

    async def provision(
        self,
        version: str,
        destination_dir: Path | str,
        on_progress: ProgressCallback | None = None,
    ) -> InstalledBinary:
        """Ask for download consent, then fetch and install a release.

        Raises:
            ConsentDenied: If the user declines the download
            ProvisioningError: If resolving or installing fails
        """
        decision = await self.consent.authorize(ConsentAction.DOWNLOAD)
        if not decision.granted:
            raise ConsentDenied(ConsentAction.DOWNLOAD)

        if on_progress:
            on_progress("Fetching release info...")
        asset = await self.resolver.resolve(version)
        return await self.installer.install(asset, destination_dir, on_progress=on_progress)
