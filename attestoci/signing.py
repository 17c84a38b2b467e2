"""Keyless signature checks and signing through the cosign CLI.

An identity policy pins a signature to the CI workflow that produced it::

    issuer:   https://token.actions.githubusercontent.com
    identity: ^https://github\\.com/<owner>/<product>/\\.github/workflows/<workflow>@<ref>$
"""
from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

from attestoci.errors import SelfVerificationFailure, SignatureInvalid, SigningError
from attestoci.oci.reference import ImageReference

logger = logging.getLogger(__name__)

GITHUB_ACTIONS_ISSUER = "https://token.actions.githubusercontent.com"
SIGSTORE_BUNDLE_MEDIA_TYPE = "application/vnd.dev.sigstore.bundle"


@dataclass(slots=True, frozen=True)
class IdentityPolicy:
    """Expected OIDC issuer and certificate identity of a signer"""

    issuer: str
    identity_regexp: str

    def __str__(self):
        return f"{self.identity_regexp} (issuer {self.issuer})"

    @classmethod
    def for_workflow(
        cls,
        owner: str,
        product: str,
        workflow: str,
        ref: str,
        issuer: str = GITHUB_ACTIONS_ISSUER,
    ) -> "IdentityPolicy":
        """Policy matching exactly one GitHub workflow file on one ref"""
        identity = (
            f"https://github.com/{owner}/{product}/.github/workflows/{workflow}@{ref}"
        )
        return cls(issuer=issuer, identity_regexp=f"^{re.escape(identity)}$")

    def matches(self, identity: str, issuer: str) -> bool:
        return issuer == self.issuer and re.search(self.identity_regexp, identity) is not None


class Signer(Protocol):
    def verify_image(self, image: ImageReference, policy: IdentityPolicy): ...

    def sign_blob(self, path: Path, bundle_path: Path): ...

    def verify_blob(self, path: Path, bundle_path: Path, policy: IdentityPolicy): ...


def is_sigstore_bundle(bundle_path: Path) -> bool:
    """True when `bundle_path` holds a bundle in the sigstore bundle format

    cosign only reads those with ``--new-bundle-format``. Anything unreadable
    is left for cosign to report.
    """
    try:
        data = json.loads(bundle_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    return isinstance(data, dict) and str(data.get("mediaType", "")).startswith(
        SIGSTORE_BUNDLE_MEDIA_TYPE
    )


class CosignSigner:
    """Signer backed by the cosign CLI

    Signing relies on cosign picking up the ambient OIDC token of the CI job.
    """

    def __init__(self, executable: str = "cosign"):
        self.executable = executable

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        command = [self.executable, *args]
        logger.debug("Running %s", " ".join(command))
        if shutil.which(self.executable) is None:
            raise SigningError(
                f"{self.executable} not found, "
                "see https://github.com/sigstore/cosign#installation"
            )
        return subprocess.run(command, capture_output=True, text=True, check=False)

    def verify_image(self, image: ImageReference, policy: IdentityPolicy):
        result = self._run(
            "verify",
            f"--certificate-oidc-issuer={policy.issuer}",
            f"--certificate-identity-regexp={policy.identity_regexp}",
            str(image),
        )
        if result.returncode != 0:
            raise SignatureInvalid(
                f"{image} is not signed by {policy}: {result.stderr.strip()}"
            )
        logger.info("Verified signature of %s", image)

    def sign_blob(self, path: Path, bundle_path: Path):
        result = self._run("sign-blob", "--yes", "--bundle", str(bundle_path), str(path))
        if result.returncode != 0:
            raise SigningError(f"Signing {path} failed: {result.stderr.strip()}")
        logger.info("Signed %s into %s", path.name, bundle_path.name)

    def verify_blob(self, path: Path, bundle_path: Path, policy: IdentityPolicy):
        bundle_format = ["--new-bundle-format"] if is_sigstore_bundle(bundle_path) else []
        result = self._run(
            "verify-blob",
            *bundle_format,
            "--bundle",
            str(bundle_path),
            f"--certificate-oidc-issuer={policy.issuer}",
            f"--certificate-identity-regexp={policy.identity_regexp}",
            str(path),
        )
        if result.returncode != 0:
            raise SignatureInvalid(
                f"{bundle_path.name} does not verify {path.name} for {policy}: "
                f"{result.stderr.strip()}"
            )
        logger.info("Verified %s with %s", path.name, bundle_path.name)


def verify_image(signer: Signer, image: ImageReference, policy: IdentityPolicy):
    """Check that `image` was signed by the workflow `policy` describes"""
    if image.digest is None:
        raise ValueError(f"{image} must be pinned to a digest")
    signer.verify_image(image, policy)


def sign_and_self_verify(
    signer: Signer,
    path: Path,
    bundle_path: Path,
    policy: IdentityPolicy,
    signed: Callable[[], None] | None = None,
) -> Path:
    """Sign `path` and verify the bundle against the policy it should satisfy

    A bundle that fails verification is removed, so it can not be published.
    `signed` is called between signing and verification.
    """
    try:
        signer.sign_blob(path, bundle_path)
    except SigningError:
        bundle_path.unlink(missing_ok=True)
        raise
    if signed is not None:
        signed()
    try:
        signer.verify_blob(path, bundle_path, policy)
    except SignatureInvalid as e:
        bundle_path.unlink(missing_ok=True)
        raise SelfVerificationFailure(
            f"The bundle for {path.name} does not verify against {policy}, "
            f"check the signing identity of this workflow: {e}"
        ) from e
    return bundle_path
