"""Download and verify the runner agent package once per provisioning run.

The fetcher resolves a release of ``actions/runner``, downloads the tarball
and its published SHA-256 checksum into a private scratch directory, and
verifies the bytes before handing out an :class:`Artifact`. The scratch
directory lives exactly as long as the ``with`` block that fetched it, so it
is removed on success, on failure, and when the run is interrupted.

Examples
--------
>>> fetcher = ArtifactFetcher()
>>> with fetcher.fetch(ReleaseSource(version="2.321.0")) as artifact:  # doctest: +SKIP
...     artifact.local_path.name
'actions-runner-linux-x64-2.321.0.tar.gz'
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from runner_fleet._fleet_commands import CommandContext, run_command
from runner_fleet._fleet_errors import CommandError, IntegrityError, ResolutionError
from runner_fleet._fleet_models import Artifact, ReleaseSource

logger = logging.getLogger(__name__)

RELEASES_API = "https://api.github.com/repos/actions/runner/releases"
DOWNLOAD_BASE = "https://github.com/actions/runner/releases/download"
VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")
SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
CHUNK_SIZE = 1024 * 1024


def normalise_version(raw: str) -> str:
    """Strip the ``v`` tag prefix and validate the version string.

    Examples
    --------
    >>> normalise_version("v2.321.0")
    '2.321.0'
    """

    version = raw.strip().removeprefix("v")
    if not VERSION_PATTERN.fullmatch(version):
        msg = f"Unrecognised runner version {raw!r}"
        raise ResolutionError(msg)
    return version


def tarball_name(version: str, platform: str) -> str:
    return f"actions-runner-{platform}-{version}.tar.gz"


def parse_checksum(text: str, filename: str) -> str:
    """Extract the expected SHA-256 for *filename* from a checksum file.

    Release checksum files come either as a bare digest or in
    ``sha256sum`` format (``<digest>  <filename>``).

    Examples
    --------
    >>> parse_checksum("ab" * 32 + "\\n", "x.tar.gz") == "ab" * 32
    True
    >>> parse_checksum("cd" * 32 + "  x.tar.gz\\n", "x.tar.gz") == "cd" * 32
    True
    """

    lines = [line.split() for line in text.splitlines() if line.strip()]
    named = [fields for fields in lines if len(fields) > 1 and fields[-1].lstrip("*") == filename]
    candidates = named or lines
    if not candidates:
        msg = f"Checksum file for {filename} is empty"
        raise IntegrityError(msg)
    digest = candidates[0][0]
    if not SHA256_PATTERN.fullmatch(digest):
        msg = f"Unable to parse SHA256 for {filename}: {digest!r}"
        raise IntegrityError(msg)
    return digest.lower()


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class ArtifactFetcher:
    """Resolve, download and verify runner release assets with ``curl``."""

    timeout: int = 600
    retries: int = 3

    def _curl(self, *args: str) -> str:
        return run_command(
            "curl",
            "-fsSL",
            "--retry",
            str(self.retries),
            *args,
            context=CommandContext(timeout=self.timeout),
        )

    def resolve_version(self, source: ReleaseSource) -> str:
        """Return the concrete release version *source* refers to."""

        if source.version is not None:
            return normalise_version(source.version)
        try:
            stdout = self._curl(
                "-H", "Accept: application/vnd.github+json", f"{RELEASES_API}/latest"
            )
        except CommandError as exc:
            raise ResolutionError(f"Failed to query the latest runner release: {exc}") from exc
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ResolutionError(f"Invalid JSON from the releases API: {exc}") from exc
        tag = payload.get("tag_name") if isinstance(payload, dict) else None
        if not isinstance(tag, str) or not tag:
            msg = "Failed to resolve latest actions/runner version from GitHub API"
            raise ResolutionError(msg)
        return normalise_version(tag)

    def _download(self, url: str, destination: Path) -> None:
        try:
            self._curl("-o", str(destination), url)
        except CommandError as exc:
            raise ResolutionError(f"Failed to download {url}: {exc}") from exc

    @contextmanager
    def fetch(self, source: ReleaseSource) -> Iterator[Artifact]:
        """Yield a verified artifact whose scratch directory is removed on exit.

        Raises
        ------
        ResolutionError
            Raised when the release or one of its assets cannot be located.
        IntegrityError
            Raised when the tarball does not match its published checksum.
        """

        version = self.resolve_version(source)
        filename = tarball_name(version, source.platform)
        url = f"{DOWNLOAD_BASE}/v{version}/{filename}"
        with tempfile.TemporaryDirectory(prefix="runner-artifact-") as scratch:
            scratch_dir = Path(scratch)
            tarball = scratch_dir / filename
            checksum_file = scratch_dir / f"{filename}.sha256"
            logger.info("Downloading actions/runner %s", version)
            self._download(url, tarball)
            self._download(f"{url}.sha256", checksum_file)

            expected = parse_checksum(checksum_file.read_text(encoding="utf-8"), filename)
            actual = sha256_file(tarball)
            if actual != expected:
                msg = f"Checksum mismatch for {filename}: expected {expected}, got {actual}"
                raise IntegrityError(msg)
            logger.info("Verified %s (sha256 %s)", filename, actual)
            yield Artifact(
                url=url,
                expected_checksum=expected,
                local_path=tarball,
                version=version,
            )
        logger.debug("Removed artifact scratch directory %s", scratch_dir)


__all__ = [
    "ArtifactFetcher",
    "normalise_version",
    "parse_checksum",
    "sha256_file",
    "tarball_name",
]
