from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from attestoci.checksum import ArtifactNames
from attestoci.oci.reference import ImageReference, validate_digest
from attestoci.signing import GITHUB_ACTIONS_ISSUER, IdentityPolicy

DEFAULT_ARCHITECTURES = ("amd64", "arm64")


class PipelineConfig(BaseModel):
    """Settings of one attestation run, shared by all architectures"""

    registry: str = "ghcr.io"
    owner: str
    product: str = "policy-server"
    image_digest: str
    ref: str
    architectures: list[str] = Field(default_factory=lambda: list(DEFAULT_ARCHITECTURES))
    os: str = "linux"
    output: Path = Path(".")
    username: str | None = None
    password: str | None = Field(default=None, repr=False)
    insecure: bool = False
    oidc_issuer: str = GITHUB_ACTIONS_ISSUER
    image_workflow: str = "container-image.yml"
    attestation_workflow: str = "attestation.yml"

    @field_validator("architectures")
    @classmethod
    def _unique_architectures(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one architecture is required")
        if len(set(value)) != len(value):
            raise ValueError(f"duplicate architectures in {value}")
        return value

    @field_validator("image_digest")
    @classmethod
    def _digest(cls, value: str) -> str:
        return validate_digest(value)

    @property
    def registry_url(self) -> str:
        scheme = "http" if self.insecure else "https"
        return f"{scheme}://{self.registry}"

    @property
    def repository(self) -> str:
        return f"{self.owner}/{self.product}".lower()

    @property
    def image(self) -> ImageReference:
        return ImageReference(
            registry=self.registry, repository=self.repository, digest=self.image_digest
        )

    def image_policy(self) -> IdentityPolicy:
        """Identity of the workflow that built and signed the image"""
        return IdentityPolicy.for_workflow(
            self.owner, self.product, self.image_workflow, self.ref, self.oidc_issuer
        )

    def attestation_policy(self) -> IdentityPolicy:
        """Identity of the workflow that signs the checksum files"""
        return IdentityPolicy.for_workflow(
            self.owner, self.product, self.attestation_workflow, self.ref, self.oidc_issuer
        )

    def names(self, arch: str) -> ArtifactNames:
        return ArtifactNames(product=self.product, arch=arch)

    def directory(self, arch: str) -> Path:
        return self.output / self.names(arch).directory
