from __future__ import annotations

import logging

from pydantic import BaseModel, ValidationError

from attestoci.errors import NotFoundError, TransferError
from attestoci.oci.client import RegistryClient
from attestoci.oci.descriptor import Descriptor

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)


class Manifest(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    config: Descriptor
    artifactType: str | None = None
    layers: list[Descriptor] = []
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    mediaType: str = "application/vnd.oci.image.manifest.v1+json"
    schemaVersion: int = 2

    @classmethod
    def pull(cls, name: str, reference: str, client: RegistryClient) -> "Manifest":
        data = client.pull_manifest(name=name, reference=reference)
        logger.debug(data)
        media_type = data.get("mediaType")
        if media_type is not None and media_type not in MANIFEST_MEDIA_TYPES:
            raise NotFoundError(
                f"{name}@{reference} is not an image manifest but {media_type}"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise TransferError(f"{name}@{reference} is not a valid image manifest: {e}") from e

    def layers_with_annotation(self, key: str, value: str) -> list[Descriptor]:
        """Return the layers annotated with `key` = `value`, in manifest order"""
        return [layer for layer in self.layers if layer.annotation(key) == value]
