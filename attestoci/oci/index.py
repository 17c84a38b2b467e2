from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from attestoci.errors import AmbiguousError, NotFoundError, TransferError
from attestoci.oci.client import RegistryClient
from attestoci.oci.descriptor import Descriptor

logger = logging.getLogger(__name__)

INDEX_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)

REFERENCE_TYPE = "vnd.docker.reference.type"
REFERENCE_DIGEST = "vnd.docker.reference.digest"


class Platform(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    model_config = ConfigDict(populate_by_name=True)

    architecture: str
    os: str
    osVersion: str | None = Field(default=None, alias="os.version")
    osFeatures: list[str] | None = Field(default=None, alias="os.features")
    variant: str | None = None

    def __str__(self):
        return "/".join(filter(None, [self.os, self.architecture, self.variant]))

    def matches(self, os: str, architecture: str, variant: str | None = None) -> bool:
        """Match os and architecture, the variant only when one is requested"""
        if (self.os, self.architecture) != (os, architecture):
            return False
        return variant is None or self.variant == variant


class PlatformDescriptor(Descriptor):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    mediaType: str = "application/vnd.oci.image.manifest.v1+json"
    platform: Platform | None = None


class Index(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/image-index.md
    """

    name: str
    reference: str
    artifactType: str | None = None
    manifests: list[PlatformDescriptor] = []
    annotations: dict[str, str] | None = None
    schemaVersion: int = 2
    mediaType: str = "application/vnd.oci.image.index.v1+json"

    @classmethod
    def pull(cls, name: str, reference: str, client: RegistryClient) -> "Index":
        manifest = client.pull_manifest(name=name, reference=reference)
        logger.debug(manifest)
        media_type = manifest.get("mediaType")
        # mediaType is optional, an index without one is known by its manifests
        if media_type is None and "manifests" not in manifest:
            raise NotFoundError(f"{name}@{reference} is not an image index")
        if media_type is not None and media_type not in INDEX_MEDIA_TYPES:
            raise NotFoundError(f"{name}@{reference} is not an image index but {media_type}")
        try:
            return cls.model_validate(manifest | {"name": name, "reference": reference})
        except ValidationError as e:
            raise TransferError(f"{name}@{reference} is not a valid image index: {e}") from e

    def select_platform(
        self, os: str, architecture: str, variant: str | None = None
    ) -> PlatformDescriptor:
        """Return the single manifest built for the given platform"""
        candidates = [
            descriptor
            for descriptor in self.manifests
            if descriptor.platform is not None
            and descriptor.platform.matches(os, architecture, variant)
        ]
        wanted = "/".join(filter(None, [os, architecture, variant]))
        if not candidates:
            available = ", ".join(
                str(d.platform) for d in self.manifests if d.platform is not None
            )
            raise NotFoundError(
                f"{self.name}@{self.reference} has no manifest for {wanted} "
                f"(available: {available or 'none'})"
            )
        if len(candidates) > 1:
            raise AmbiguousError(
                f"{self.name}@{self.reference} has {len(candidates)} manifests for "
                f"{wanted}: {', '.join(d.digest for d in candidates)}"
            )
        return candidates[0]

    def referrers(
        self, reference_type: str, subject_digest: str
    ) -> list[PlatformDescriptor]:
        """Return the manifests attached to `subject_digest`, in index order

        BuildKit stores attestations as siblings of the platform manifests,
        linked to them through annotations.
        """
        return [
            descriptor
            for descriptor in self.manifests
            if descriptor.annotation(REFERENCE_TYPE) == reference_type
            and descriptor.annotation(REFERENCE_DIGEST) == subject_digest
        ]
