"""Find the attestations BuildKit attached to one platform of an image.

BuildKit does not embed attestations in the image manifest. It adds an
attestation manifest next to each platform manifest in the image index,
linked to it with annotations::

    index
    ├── linux/amd64 manifest                      sha256:aaa
    ├── linux/arm64 manifest                      sha256:bbb
    ├── attestation manifest (reference.digest=sha256:aaa)
    │   ├── provenance layer  (predicate-type slsa.dev/provenance/v0.2)
    │   └── sbom layer(s)     (predicate-type spdx.dev/Document)
    └── attestation manifest (reference.digest=sha256:bbb)

Resolution only reads manifests, blobs are fetched later.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from attestoci.errors import AmbiguousError, NotFoundError
from attestoci.oci.client import RegistryClient
from attestoci.oci.index import Index
from attestoci.oci.manifest import Manifest
from attestoci.oci.reference import ImageReference

logger = logging.getLogger(__name__)

ATTESTATION_MANIFEST = "attestation-manifest"
PREDICATE_TYPE = "in-toto.io/predicate-type"
PROVENANCE_PREDICATE = "https://slsa.dev/provenance/v0.2"
SBOM_PREDICATE = "https://spdx.dev/Document"


@dataclass(slots=True, frozen=True)
class Resolution:
    """Digests of the attestations of one platform of an image"""

    image: ImageReference
    arch: str
    platform_digest: str
    attestation_digest: str
    provenance_digest: str
    sbom_digests: tuple[str, ...] = field(default_factory=tuple)

    @property
    def digests(self) -> list[str]:
        """All attestation blob digests, provenance first"""
        return [self.provenance_digest, *self.sbom_digests]


def find_attestation_manifest(index: Index, platform_digest: str) -> str:
    """Return the digest of the attestation manifest attached to `platform_digest`

    When the index holds more than one, the first one in index order is used.
    """
    candidates = index.referrers(ATTESTATION_MANIFEST, platform_digest)
    if not candidates:
        raise NotFoundError(
            f"{index.name}@{index.reference} has no attestation manifest "
            f"for {platform_digest}"
        )
    if len(candidates) > 1:
        logger.warning(
            "%s@%s has %d attestation manifests for %s, using the first: %s",
            index.name,
            index.reference,
            len(candidates),
            platform_digest,
            candidates[0].digest,
        )
    return candidates[0].digest


def partition_layers(manifest: Manifest, reference: str) -> tuple[str, list[str]]:
    """Split attestation layers into the provenance digest and the SBOM digests"""
    provenance = manifest.layers_with_annotation(PREDICATE_TYPE, PROVENANCE_PREDICATE)
    if not provenance:
        raise NotFoundError(f"{reference} has no {PROVENANCE_PREDICATE} layer")
    if len(provenance) > 1:
        raise AmbiguousError(
            f"{reference} has {len(provenance)} {PROVENANCE_PREDICATE} layers"
        )
    sboms = manifest.layers_with_annotation(PREDICATE_TYPE, SBOM_PREDICATE)
    return provenance[0].digest, [layer.digest for layer in sboms]


def resolve_platform(index: Index, arch: str, os: str = "linux") -> str:
    """Return the digest of the manifest of `index` built for `os`/`arch`

    `arch` can carry a variant, e.g. "arm/v7".
    """
    architecture, _, variant = arch.partition("/")
    return index.select_platform(os, architecture, variant or None).digest


def resolve_layers(
    image: ImageReference, attestation_digest: str, client: RegistryClient
) -> tuple[str, list[str]]:
    manifest = Manifest.pull(
        name=image.repository, reference=attestation_digest, client=client
    )
    return partition_layers(manifest, f"{image.repository}@{attestation_digest}")


def resolve(
    image: ImageReference,
    arch: str,
    client: RegistryClient,
    os: str = "linux",
    resolved: Callable[[str], None] | None = None,
) -> Resolution:
    """Resolve the provenance and SBOM digests of `image` for `os`/`arch`

    `image` should be pinned to the digest of a verified image index.
    `resolved` is called with the name of each completed step:
    "platform", "attestation", then "layers".
    """
    resolved = resolved or (lambda step: None)

    index = Index.pull(name=image.repository, reference=image.reference, client=client)
    platform_digest = resolve_platform(index, arch, os)
    logger.info("%s: platform manifest %s", arch, platform_digest)
    resolved("platform")

    # The index is content addressed, the attestation manifests are siblings
    # of the platform manifest in that same document.
    attestation_digest = find_attestation_manifest(index, platform_digest)
    logger.info("%s: attestation manifest %s", arch, attestation_digest)
    resolved("attestation")

    provenance, sboms = resolve_layers(image, attestation_digest, client)
    logger.info("%s: provenance %s, %d SBOM(s)", arch, provenance, len(sboms))
    resolved("layers")
    return Resolution(
        image=image,
        arch=arch,
        platform_digest=platform_digest,
        attestation_digest=attestation_digest,
        provenance_digest=provenance,
        sbom_digests=tuple(sboms),
    )
