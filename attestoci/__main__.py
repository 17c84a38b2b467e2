import logging
import logging.config
from pathlib import Path

import click
from pydantic import ValidationError

import attestoci
from attestoci import pipeline
from attestoci.checksum import ArtifactNames, ChecksumManifest, verify_checksums
from attestoci.config import DEFAULT_ARCHITECTURES, PipelineConfig
from attestoci.errors import AttestationError
from attestoci.oci.client import Client
from attestoci.resolver import resolve
from attestoci.signing import (
    GITHUB_ACTIONS_ISSUER,
    CosignSigner,
    IdentityPolicy,
    Signer,
    verify_image,
)

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s: %(message)s",
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "attestoci": {"handlers": ["default"], "level": "INFO", "propagate": False},
    },
}


class Attest:
    def __init__(
        self,
        signer: str = "cosign",
        debug: bool = False,
        **settings,
    ):
        logging.config.dictConfig(LOGGING_CONFIG)
        if debug:
            logging.getLogger("attestoci").setLevel(logging.DEBUG)
        self.signer_name = signer
        self.settings = {key: value for key, value in settings.items() if value is not None}

    def config(self, **kwargs) -> PipelineConfig:
        try:
            return PipelineConfig(**(self.settings | kwargs))
        except ValidationError as e:
            raise click.UsageError(str(e)) from e

    def client(self, config: PipelineConfig) -> Client:
        return Client(
            registry_url=config.registry_url,
            username=config.username,
            password=config.password,
        )

    def signer(self) -> Signer:
        if self.signer_name == "sigstore":
            # Imported on use, sigstore loads its trust configuration on import
            from attestoci.keyless import SigstoreSigner

            return SigstoreSigner()
        return CosignSigner()

    def require_ref(self) -> str:
        if not self.settings.get("ref"):
            raise click.UsageError("Missing option '--ref' (or GITHUB_REF).")
        return self.settings["ref"]


@click.group()
@click.version_option(attestoci.__version__)
@click.option("-r", "--registry", envvar="ATTESTOCI_REGISTRY", default="ghcr.io", show_default=True)
@click.option("--owner", envvar="GITHUB_REPOSITORY_OWNER", required=True, help="Repository owner")
@click.option("--product", envvar="ATTESTOCI_PRODUCT", default="policy-server", show_default=True)
@click.option("--ref", envvar="GITHUB_REF", default=None, help="Git ref the workflows ran on")
@click.option("-u", "--username", envvar="ATTESTOCI_USERNAME", default=None)
@click.option("-p", "--password", envvar="ATTESTOCI_PASSWORD", default=None)
@click.option("--insecure", is_flag=True, help="Use plain http for the registry")
@click.option("--oidc-issuer", default=GITHUB_ACTIONS_ISSUER, show_default=True)
@click.option("--image-workflow", default="container-image.yml", show_default=True)
@click.option("--attestation-workflow", default="attestation.yml", show_default=True)
@click.option(
    "--signer",
    type=click.Choice(["cosign", "sigstore"]),
    default="cosign",
    show_default=True,
)
@click.option("-d", "--debug", help="Debug output", is_flag=True)
@click.pass_context
def cli(ctx, **options):
    ctx.obj = Attest(**options)


@cli.command()
@click.argument("image_digest")
@click.option(
    "-a",
    "--arch",
    "architectures",
    multiple=True,
    default=DEFAULT_ARCHITECTURES,
    show_default=True,
)
@click.option("--os", "os_", default="linux", show_default=True)
@click.option(
    "-o",
    "--output",
    default=".",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
)
@click.pass_context
def run(ctx, image_digest: str, architectures: tuple[str, ...], os_: str, output: Path):
    """Fetch, sign and verify the SBOM and provenance files of an image."""
    obj: Attest = ctx.ensure_object(Attest)
    obj.require_ref()
    config = obj.config(
        image_digest=image_digest,
        architectures=list(architectures),
        os=os_,
        output=output,
    )
    result = pipeline.run(
        config,
        signer=obj.signer(),
        client_factory=lambda: obj.client(config),
    )
    for outcome in result.outcomes:
        print(outcome)
    if not result.ok:
        raise click.ClickException(str(result.first_error))


@cli.command(name="resolve")
@click.argument("image_digest")
@click.option("-a", "--arch", required=True)
@click.option("--os", "os_", default="linux", show_default=True)
@click.pass_context
def resolve_command(ctx, image_digest: str, arch: str, os_: str):
    """Print the attestation digests of one platform of an image."""
    obj: Attest = ctx.ensure_object(Attest)
    config = obj.config(image_digest=image_digest, ref=obj.settings.get("ref", ""))
    try:
        with obj.client(config) as client:
            resolution = resolve(config.image, arch=arch, client=client, os=os_)
    except AttestationError as e:
        raise click.ClickException(str(e)) from e
    print(f"platform:    {resolution.platform_digest}")
    print(f"attestation: {resolution.attestation_digest}")
    print(f"provenance:  {resolution.provenance_digest}")
    for digest in resolution.sbom_digests:
        print(f"sbom:        {digest}")


@cli.command(name="verify-image")
@click.argument("image_digest")
@click.pass_context
def verify_image_command(ctx, image_digest: str):
    """Verify the signature of an image."""
    obj: Attest = ctx.ensure_object(Attest)
    obj.require_ref()
    config = obj.config(image_digest=image_digest)
    try:
        verify_image(obj.signer(), config.image, config.image_policy())
    except AttestationError as e:
        raise click.ClickException(str(e)) from e
    print(f"Verified: {config.image}")


@cli.command()
@click.argument(
    "directory",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
)
@click.option("-a", "--arch", required=True)
@click.pass_context
def verify(ctx, directory: Path, arch: str):
    """Verify downloaded attestation files of one architecture."""
    obj: Attest = ctx.ensure_object(Attest)
    settings = obj.settings
    policy = IdentityPolicy.for_workflow(
        owner=settings["owner"],
        product=settings["product"],
        workflow=settings["attestation_workflow"],
        ref=obj.require_ref(),
        issuer=settings["oidc_issuer"],
    )
    names = ArtifactNames(product=settings["product"], arch=arch)
    checksum_path = directory / names.checksum
    try:
        obj.signer().verify_blob(checksum_path, directory / names.bundle, policy)
        manifest = ChecksumManifest.read(checksum_path)
        verify_checksums(manifest, directory)
    except (AttestationError, OSError, ValueError) as e:
        raise click.ClickException(str(e)) from e
    for filename in manifest.filenames:
        print(f"{filename}: OK")


if __name__ == "__main__":
    cli()
