"""Per-architecture attestation pipeline.

Each architecture walks the same linear chain of stages::

    IDLE -> IMAGE_SIG_VERIFIED -> PLATFORM_RESOLVED -> ATTESTATION_RESOLVED
         -> LAYERS_PARTITIONED -> BLOBS_FETCHED -> CHECKSUM_BUILT
         -> BUNDLE_SIGNED -> BUNDLE_SELF_VERIFIED -> DONE

The first error ends the chain with a `Failed` outcome that records the last
stage reached. Files of a failed architecture are left behind and must not
be published. Architectures run in parallel and share nothing but the
read-only registry.
"""
from __future__ import annotations

import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Union

from attestoci.checksum import fetch_blobs
from attestoci.config import PipelineConfig
from attestoci.errors import AttestationError
from attestoci.oci.client import Client, RegistryClient
from attestoci.resolver import Resolution, resolve
from attestoci.signing import Signer, sign_and_self_verify, verify_image

logger = logging.getLogger(__name__)


class Stage(enum.Enum):
    IDLE = "idle"
    IMAGE_SIG_VERIFIED = "image signature verified"
    PLATFORM_RESOLVED = "platform resolved"
    ATTESTATION_RESOLVED = "attestation resolved"
    LAYERS_PARTITIONED = "layers partitioned"
    BLOBS_FETCHED = "blobs fetched"
    CHECKSUM_BUILT = "checksum built"
    BUNDLE_SIGNED = "bundle signed"
    BUNDLE_SELF_VERIFIED = "bundle self-verified"
    DONE = "done"


RESOLUTION_STAGES = {
    "platform": Stage.PLATFORM_RESOLVED,
    "attestation": Stage.ATTESTATION_RESOLVED,
    "layers": Stage.LAYERS_PARTITIONED,
}


@dataclass(slots=True, frozen=True)
class Done:
    arch: str
    resolution: Resolution
    files: tuple[Path, ...]
    stage: Stage = Stage.DONE

    @property
    def ok(self) -> bool:
        return True

    def __str__(self):
        return f"{self.arch}: {len(self.files)} files"


@dataclass(slots=True, frozen=True)
class Failed:
    arch: str
    stage: Stage
    error: AttestationError

    @property
    def ok(self) -> bool:
        return False

    def __str__(self):
        return (
            f"{self.arch}: {type(self.error).__name__} after "
            f"'{self.stage.value}': {self.error}"
        )


Outcome = Union[Done, Failed]


@dataclass(slots=True)
class PipelineResult:
    """Outcomes of all architectures, in the requested order"""

    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(outcome.ok for outcome in self.outcomes)

    @property
    def failures(self) -> list[Failed]:
        return [outcome for outcome in self.outcomes if isinstance(outcome, Failed)]

    @property
    def first_error(self) -> Failed | None:
        failures = self.failures
        return failures[0] if failures else None


class ArchitectureRun:
    """The attestation chain for one architecture"""

    def __init__(
        self,
        config: PipelineConfig,
        arch: str,
        client: RegistryClient,
        signer: Signer,
    ):
        self.config = config
        self.arch = arch
        self.client = client
        self.signer = signer
        self.stage = Stage.IDLE

    def advance(self, stage: Stage):
        logger.debug("%s: %s -> %s", self.arch, self.stage.value, stage.value)
        self.stage = stage

    def execute(self) -> Done:
        config, arch = self.config, self.arch
        image = config.image

        verify_image(self.signer, image, config.image_policy())
        self.advance(Stage.IMAGE_SIG_VERIFIED)

        resolution = resolve(
            image,
            arch,
            self.client,
            os=config.os,
            resolved=lambda step: self.advance(RESOLUTION_STAGES[step]),
        )

        names = config.names(arch)
        directory = config.directory(arch)
        manifest = fetch_blobs(resolution, self.client, names, directory)
        self.advance(Stage.BLOBS_FETCHED)

        checksum_path = directory / names.checksum
        manifest.write(checksum_path)
        self.advance(Stage.CHECKSUM_BUILT)

        sign_and_self_verify(
            self.signer,
            checksum_path,
            directory / names.bundle,
            config.attestation_policy(),
            signed=lambda: self.advance(Stage.BUNDLE_SIGNED),
        )
        self.advance(Stage.BUNDLE_SELF_VERIFIED)

        files = tuple(
            directory / filename
            for filename in [*manifest.filenames, names.checksum, names.bundle]
        )
        self.advance(Stage.DONE)
        return Done(arch=arch, resolution=resolution, files=files)

    def run(self) -> Outcome:
        try:
            return self.execute()
        except AttestationError as e:
            logger.error("%s: failed after '%s': %s", self.arch, self.stage.value, e)
            return Failed(arch=self.arch, stage=self.stage, error=e)


def run_architecture(
    config: PipelineConfig,
    arch: str,
    client_factory: Callable[[], Client],
    signer: Signer,
) -> Outcome:
    """Run the chain for `arch` with a registry client of its own"""
    with client_factory() as client:
        return ArchitectureRun(config, arch, client, signer).run()


def run(
    config: PipelineConfig,
    signer: Signer,
    client_factory: Callable[[], Client] | None = None,
) -> PipelineResult:
    """Run every architecture of `config` in parallel and join the outcomes"""
    if client_factory is None:

        def client_factory():
            return Client(
                registry_url=config.registry_url,
                username=config.username,
                password=config.password,
            )

    logger.info(
        "Attesting %s for %s", config.image, ", ".join(config.architectures)
    )
    with ThreadPoolExecutor(
        max_workers=len(config.architectures), thread_name_prefix="attestoci"
    ) as pool:
        futures = [
            pool.submit(run_architecture, config, arch, client_factory, signer)
            for arch in config.architectures
        ]
        return PipelineResult(outcomes=[future.result() for future in futures])
