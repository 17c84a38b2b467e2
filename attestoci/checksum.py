"""Download attestation blobs and list their checksums.

The checksum file uses the ``md5sum`` format so consumers can check the
downloads with ``md5sum -c``. The md5 only guards against transfer
corruption, the signature over the checksum file is what binds the content.
"""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from attestoci.errors import AmbiguousError, TransferError
from attestoci.oci.client import RegistryClient
from attestoci.resolver import Resolution

logger = logging.getLogger(__name__)

CHECKSUM_LINE = re.compile(r"^(?P<checksum>[0-9a-f]{32}) [ *](?P<filename>.+)$")


@dataclass(slots=True, frozen=True)
class ArtifactNames:
    """File names of the published attestation files of one architecture"""

    product: str
    arch: str

    @property
    def prefix(self) -> str:
        return f"{self.product}-attestation-{self.arch.replace('/', '-')}"

    @property
    def directory(self) -> str:
        """Name of the artifact bundle grouping the files"""
        return f"attestation-{self.arch.replace('/', '-')}"

    @property
    def provenance(self) -> str:
        return f"{self.prefix}-provenance.json"

    def sbom(self, digest: str) -> str:
        # The full hex part keeps SBOMs with a common digest prefix apart
        _, _, hex_digest = digest.partition(":")
        return f"{self.prefix}-sbom-{hex_digest or digest}.json"

    @property
    def checksum(self) -> str:
        return f"{self.prefix}-checksum.txt"

    @property
    def bundle(self) -> str:
        return f"{self.prefix}-checksum-cosign.bundle"


@dataclass(slots=True, frozen=True)
class ChecksumEntry:
    filename: str
    checksum: str

    def __str__(self):
        return f"{self.checksum}  {self.filename}"

    @classmethod
    def from_bytes(cls, filename: str, data: bytes) -> "ChecksumEntry":
        checksum = hashlib.md5(data, usedforsecurity=False).hexdigest()
        return cls(filename=filename, checksum=checksum)


@dataclass(slots=True)
class ChecksumManifest:
    """Checksum lines in download order"""

    entries: list[ChecksumEntry] = field(default_factory=list)

    def __len__(self):
        return len(self.entries)

    @property
    def filenames(self) -> list[str]:
        return [entry.filename for entry in self.entries]

    def add(self, filename: str, data: bytes) -> ChecksumEntry:
        if filename in self.filenames:
            raise AmbiguousError(f"Duplicate attestation file name: {filename}")
        entry = ChecksumEntry.from_bytes(filename, data)
        self.entries.append(entry)
        return entry

    def render(self) -> str:
        return "".join(f"{entry}\n" for entry in self.entries)

    def write(self, path: Path):
        path.write_text(self.render(), encoding="utf-8")

    @classmethod
    def parse(cls, text: str) -> "ChecksumManifest":
        entries = []
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            match = CHECKSUM_LINE.match(line)
            if not match:
                raise ValueError(f"Invalid checksum line {number}: {line!r}")
            if "/" in match["filename"] or match["filename"] in (".", ".."):
                raise ValueError(f"Checksum line {number} names a path: {line!r}")
            entries.append(
                ChecksumEntry(filename=match["filename"], checksum=match["checksum"])
            )
        return cls(entries=entries)

    @classmethod
    def read(cls, path: Path) -> "ChecksumManifest":
        return cls.parse(path.read_text(encoding="utf-8"))


def fetch_blobs(
    resolution: Resolution,
    client: RegistryClient,
    names: ArtifactNames,
    directory: Path,
) -> ChecksumManifest:
    """Download the provenance and SBOM blobs of `resolution` into `directory`

    Returns the checksums of the downloaded files, in download order.
    """
    directory.mkdir(parents=True, exist_ok=True)
    downloads = [(resolution.provenance_digest, names.provenance)]
    downloads += [(digest, names.sbom(digest)) for digest in resolution.sbom_digests]

    manifest = ChecksumManifest()
    for digest, filename in downloads:
        data = client.pull_blob(name=resolution.image.repository, digest=digest)
        entry = manifest.add(filename, data)
        (directory / filename).write_bytes(data)
        logger.info("%s: downloaded %s (%s)", resolution.arch, filename, digest)
        logger.debug("%s: %s", resolution.arch, entry)
    return manifest


def fetch_and_checksum(
    resolution: Resolution,
    client: RegistryClient,
    names: ArtifactNames,
    directory: Path,
) -> ChecksumManifest:
    """Download the attestation blobs and write their checksum file"""
    manifest = fetch_blobs(resolution, client, names, directory)
    manifest.write(directory / names.checksum)
    return manifest


def verify_checksums(manifest: ChecksumManifest, directory: Path):
    """Check every file listed in `manifest` against its checksum"""
    for entry in manifest.entries:
        path = directory / entry.filename
        if not path.is_file():
            raise TransferError(f"{path} is missing")
        actual = ChecksumEntry.from_bytes(entry.filename, path.read_bytes())
        if actual.checksum != entry.checksum:
            raise TransferError(
                f"{path} has checksum {actual.checksum}, expected {entry.checksum}"
            )
        logger.debug("%s: OK", entry.filename)
