import re
from dataclasses import dataclass, replace

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

DIGEST_PATTERN = r"[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}"
TAG_PATTERN = r"[\w][\w.-]{0,127}"
REFERENCE_RE = re.compile(
    r"^(?P<name>[^@]+?)"
    rf"(?::(?P<tag>{TAG_PATTERN}))?"
    rf"(?:@(?P<digest>{DIGEST_PATTERN}))?$"
)


def validate_digest(digest: str) -> str:
    if not re.fullmatch(DIGEST_PATTERN, digest):
        raise ValueError(f"Invalid digest: {digest}")
    return digest


@dataclass(slots=True, frozen=True)
class ImageReference:
    """Container image reference

    ref: https://github.com/distribution/reference/blob/main/reference.go
    """

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    def __str__(self):
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return f"{self.registry}/{self.repository}:{self.tag or DEFAULT_TAG}"

    @property
    def reference(self) -> str:
        """The digest when pinned, the tag otherwise"""
        return self.digest or self.tag or DEFAULT_TAG

    def with_digest(self, digest: str) -> "ImageReference":
        """Return the same repository pinned to `digest`"""
        return replace(self, tag=None, digest=validate_digest(digest))

    @classmethod
    def parse(cls, value: str) -> "ImageReference":
        """Parse `[registry/]repository[:tag][@digest]`"""
        match = REFERENCE_RE.fullmatch(value.strip())
        if not match:
            raise ValueError(f"Invalid image reference: {value!r}")
        name = match["name"]
        registry, _, repository = name.partition("/")
        # The first component is only a registry when it looks like a host
        if not repository or not (
            "." in registry or ":" in registry or registry == "localhost"
        ):
            registry, repository = DEFAULT_REGISTRY, name
        if registry == DEFAULT_REGISTRY and "/" not in repository:
            repository = f"library/{repository}"
        if repository != repository.lower():
            raise ValueError(f"Repository must be lowercase: {value!r}")
        tag = match["tag"]
        if tag is None and match["digest"] is None:
            tag = DEFAULT_TAG
        return cls(
            registry=registry,
            repository=repository,
            tag=tag,
            digest=match["digest"],
        )
