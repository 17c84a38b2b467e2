import hashlib
import hmac
import json
import re
from dataclasses import dataclass, field
from pathlib import Path

import httpx
import pytest

from attestoci.config import PipelineConfig
from attestoci.errors import SignatureInvalid
from attestoci.oci.client import Client
from attestoci.resolver import PREDICATE_TYPE, PROVENANCE_PREDICATE, SBOM_PREDICATE
from attestoci.signing import GITHUB_ACTIONS_ISSUER, IdentityPolicy

REGISTRY_URL = "https://registry.example.com"
REPOSITORY = "kubewarden/policy-server"
TOKEN_REALM = "https://auth.example.com/token"
REF = "refs/heads/main"

OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
IN_TOTO = "application/vnd.in-toto+json"

WORKFLOWS = "https://github.com/kubewarden/policy-server/.github/workflows"
IMAGE_IDENTITY = f"{WORKFLOWS}/container-image.yml@{REF}"
ATTESTATION_IDENTITY = f"{WORKFLOWS}/attestation.yml@{REF}"

MANIFEST_PATH = re.compile(r"^/v2/(?P<name>.+)/(?P<kind>manifests|blobs)/(?P<reference>[^/]+)$")


def sha256_digest(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def _error(status: int, code: str, message: str) -> httpx.Response:
    return httpx.Response(status, json={"errors": [{"code": code, "message": message}]})


class FakeRegistry:
    """In-memory OCI registry served through httpx.MockTransport"""

    def __init__(self, repository: str = REPOSITORY, token: str | None = None):
        self.repository = repository
        self.token = token
        self.manifests: dict[str, tuple[str, bytes]] = {}
        self.blobs: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []

    def add_blob(
        self,
        data: bytes,
        media_type: str = "application/octet-stream",
        annotations: dict[str, str] | None = None,
    ) -> dict:
        digest = sha256_digest(data)
        self.blobs[digest] = data
        descriptor = {"mediaType": media_type, "digest": digest, "size": len(data)}
        if annotations:
            descriptor["annotations"] = annotations
        return descriptor

    def add_manifest(
        self,
        document: dict,
        annotations: dict[str, str] | None = None,
        platform: dict[str, str] | None = None,
    ) -> dict:
        data = json.dumps(document, sort_keys=True).encode("utf-8")
        digest = sha256_digest(data)
        media_type = document.get(
            "mediaType", OCI_INDEX if "manifests" in document else OCI_MANIFEST
        )
        self.manifests[digest] = (media_type, data)
        descriptor = {
            "mediaType": media_type,
            "digest": digest,
            "size": len(data),
        }
        if annotations:
            descriptor["annotations"] = annotations
        if platform:
            descriptor["platform"] = platform
        return descriptor

    @property
    def blob_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/blobs/" in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url).startswith(TOKEN_REALM):
            self.token_requests.append(request)
            return httpx.Response(200, json={"token": self.token})

        self.requests.append(request)
        if self.token is not None and (
            request.headers.get("Authorization") != f"Bearer {self.token}"
        ):
            return httpx.Response(
                401,
                headers={
                    "WWW-Authenticate": (
                        f'Bearer realm="{TOKEN_REALM}",service="registry.example.com"'
                    )
                },
            )

        match = MANIFEST_PATH.fullmatch(request.url.path)
        if not match:
            return _error(404, "NOT_FOUND", request.url.path)
        if match["name"] != self.repository:
            return _error(404, "NAME_UNKNOWN", "repository name not known to registry")

        reference = match["reference"]
        if match["kind"] == "blobs":
            if reference not in self.blobs:
                return _error(404, "BLOB_UNKNOWN", "blob unknown to registry")
            return httpx.Response(200, content=self.blobs[reference])
        if reference not in self.manifests:
            return _error(404, "MANIFEST_UNKNOWN", "manifest unknown")
        media_type, data = self.manifests[reference]
        return httpx.Response(200, content=data, headers={"Content-Type": media_type})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, **kwargs) -> Client:
        return Client(REGISTRY_URL, transport=self.transport, **kwargs)


@dataclass
class FakeImage:
    """Digests of a BuildKit style multi-platform image with attestations"""

    digest: str
    platforms: dict[str, str] = field(default_factory=dict)
    attestations: dict[str, str] = field(default_factory=dict)
    provenance: dict[str, str] = field(default_factory=dict)
    sboms: dict[str, list[str]] = field(default_factory=dict)
    index: dict = field(default_factory=dict)


def platform_manifest(registry: FakeRegistry, os: str, arch: str, variant=None) -> dict:
    config = registry.add_blob(
        json.dumps({"os": os, "architecture": arch}).encode(),
        media_type="application/vnd.oci.image.config.v1+json",
    )
    layer = registry.add_blob(
        f"rootfs {os}/{arch}".encode(),
        media_type="application/vnd.oci.image.layer.v1.tar+gzip",
    )
    platform = {"os": os, "architecture": arch}
    if variant:
        platform["variant"] = variant
    return registry.add_manifest(
        {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": config,
            "layers": [layer],
        },
        platform=platform,
    )


def attestation_manifest(
    registry: FakeRegistry,
    platform_digest: str,
    arch: str,
    sbom_count: int = 1,
    provenance_count: int = 1,
    salt: str = "",
) -> tuple[dict, list[str], list[str]]:
    config = registry.add_blob(
        json.dumps({"architecture": "unknown", "os": "unknown", "salt": salt}).encode(),
        media_type="application/vnd.oci.image.config.v1+json",
    )
    provenance = [
        registry.add_blob(
            json.dumps(
                {"predicateType": PROVENANCE_PREDICATE, "arch": arch, "n": n, "salt": salt}
            ).encode(),
            media_type=IN_TOTO,
            annotations={PREDICATE_TYPE: PROVENANCE_PREDICATE},
        )
        for n in range(provenance_count)
    ]
    sboms = [
        registry.add_blob(
            json.dumps(
                {"predicateType": SBOM_PREDICATE, "arch": arch, "n": n, "salt": salt}
            ).encode(),
            media_type=IN_TOTO,
            annotations={PREDICATE_TYPE: SBOM_PREDICATE},
        )
        for n in range(sbom_count)
    ]
    descriptor = registry.add_manifest(
        {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": config,
            "layers": [*provenance, *sboms],
        },
        annotations={
            "vnd.docker.reference.digest": platform_digest,
            "vnd.docker.reference.type": "attestation-manifest",
        },
        platform={"os": "unknown", "architecture": "unknown"},
    )
    return (
        descriptor,
        [layer["digest"] for layer in provenance],
        [layer["digest"] for layer in sboms],
    )


def build_image(
    registry: FakeRegistry,
    architectures=("amd64", "arm64"),
    sbom_count: int = 2,
    extra_manifests=(),
) -> FakeImage:
    image = FakeImage(digest="")
    platforms, attestations = [], []
    for arch in architectures:
        platform = platform_manifest(registry, "linux", arch)
        attestation, provenance, sboms = attestation_manifest(
            registry, platform["digest"], arch, sbom_count=sbom_count
        )
        platforms.append(platform)
        attestations.append(attestation)
        image.platforms[arch] = platform["digest"]
        image.attestations[arch] = attestation["digest"]
        image.provenance[arch] = provenance[0]
        image.sboms[arch] = sboms
    image.index = {
        "schemaVersion": 2,
        "mediaType": OCI_INDEX,
        "manifests": [*platforms, *attestations, *extra_manifests],
    }
    image.digest = registry.add_manifest(image.index)["digest"]
    return image


class FakeSigner:
    """Signer producing HMAC bundles that carry the signing identity"""

    key = b"attestoci-test-key"

    def __init__(
        self,
        identity: str = ATTESTATION_IDENTITY,
        issuer: str = GITHUB_ACTIONS_ISSUER,
        image_identity: str = IMAGE_IDENTITY,
    ):
        self.identity = identity
        self.issuer = issuer
        self.image_identity = image_identity
        self.calls: list[tuple[str, str]] = []

    def _signature(self, data: bytes) -> str:
        return hmac.new(self.key, data, hashlib.sha256).hexdigest()

    def verify_image(self, image, policy: IdentityPolicy):
        self.calls.append(("verify_image", str(image)))
        if not policy.matches(self.image_identity, self.issuer):
            raise SignatureInvalid(f"{image} is not signed by {policy}")

    def sign_blob(self, path: Path, bundle_path: Path):
        self.calls.append(("sign_blob", path.name))
        bundle = {
            "identity": self.identity,
            "issuer": self.issuer,
            "signature": self._signature(path.read_bytes()),
        }
        bundle_path.write_text(json.dumps(bundle), encoding="utf-8")

    def verify_blob(self, path: Path, bundle_path: Path, policy: IdentityPolicy):
        self.calls.append(("verify_blob", path.name))
        bundle = json.loads(bundle_path.read_text(encoding="utf-8"))
        if not policy.matches(bundle["identity"], bundle["issuer"]):
            raise SignatureInvalid(f"{bundle['identity']} does not match {policy}")
        if not hmac.compare_digest(
            bundle["signature"], self._signature(path.read_bytes())
        ):
            raise SignatureInvalid(f"{path.name} does not match its signature")


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def image(registry) -> FakeImage:
    return build_image(registry)


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def config(image, tmp_path) -> PipelineConfig:
    return PipelineConfig(
        registry="registry.example.com",
        owner="kubewarden",
        product="policy-server",
        image_digest=image.digest,
        ref=REF,
        output=tmp_path,
    )
