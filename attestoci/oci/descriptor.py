from pydantic import BaseModel


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    digest: str
    size: int
    mediaType: str
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None

    def annotation(self, key: str) -> str | None:
        if self.annotations is None:
            return None
        return self.annotations.get(key)
