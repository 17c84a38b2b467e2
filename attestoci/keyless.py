"""In-process keyless signing with sigstore-python.

Bundles are written in the sigstore bundle format, which
``cosign verify-blob --new-bundle-format`` also reads.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path

from cryptography import x509
from sigstore.errors import Error as SigstoreError
from sigstore.errors import VerificationError
from sigstore.models import Bundle, ClientTrustConfig
from sigstore.oidc import IdentityToken, detect_credential
from sigstore.sign import SigningContext
from sigstore.verify import Verifier
from sigstore.verify.policy import AllOf, AnyOf, OIDCIssuer, OIDCIssuerV2

from attestoci.errors import SignatureInvalid, SigningError
from attestoci.oci.reference import ImageReference
from attestoci.signing import CosignSigner, IdentityPolicy, Signer

logger = logging.getLogger(__name__)


def certificate_identities(cert: x509.Certificate) -> list[str]:
    """Return the URI and email identities in the SAN of `cert`"""
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    return [
        *san.get_values_for_type(x509.UniformResourceIdentifier),
        *san.get_values_for_type(x509.RFC822Name),
    ]


class IdentityRegexp:
    """sigstore verification policy matching the SAN against a regular expression

    `sigstore.verify.policy.Identity` only matches an identity exactly.
    """

    def __init__(self, identity_regexp: str):
        self.identity_regexp = identity_regexp

    def verify(self, cert: x509.Certificate) -> None:
        identities = certificate_identities(cert)
        if not any(re.search(self.identity_regexp, identity) for identity in identities):
            raise VerificationError(
                f"Certificate identities {identities} do not match "
                f"{self.identity_regexp!r}"
            )


def certificate_policy(policy: IdentityPolicy) -> AllOf:
    """sigstore verification policy for the issuer and identity of `policy`

    Fulcio records the issuer in one of two extensions, depending on its age.
    """
    return AllOf(
        [
            AnyOf([OIDCIssuerV2(policy.issuer), OIDCIssuer(policy.issuer)]),
            IdentityRegexp(policy.identity_regexp),
        ]
    )


class SigstoreSigner:
    """Signer using sigstore-python for blobs

    sigstore-python does not verify OCI image signatures, those checks go
    through `image_verifier` (cosign by default).
    """

    def __init__(
        self,
        identity_token: str | None = None,
        image_verifier: Signer | None = None,
        verifier: Verifier | None = None,
        signing_context: SigningContext | None = None,
    ):
        self.identity_token = identity_token
        self.image_verifier = image_verifier or CosignSigner()
        self._verifier = verifier
        self._signing_context = signing_context

    @property
    def verifier(self) -> Verifier:
        if self._verifier is None:
            self._verifier = Verifier.production()
        return self._verifier

    @property
    def signing_context(self) -> SigningContext:
        if self._signing_context is None:
            self._signing_context = SigningContext.from_trust_config(
                ClientTrustConfig.production()
            )
        return self._signing_context

    def _token(self) -> IdentityToken:
        raw = self.identity_token
        try:
            if raw is None:
                raw = detect_credential()
            if raw is None:
                raise SigningError(
                    "No ambient OIDC credential detected, "
                    "run in CI with id-token permissions or pass an identity token"
                )
            return IdentityToken(raw)
        except SigstoreError as e:
            raise SigningError(f"Invalid OIDC identity token: {e}") from e

    def verify_image(self, image: ImageReference, policy: IdentityPolicy):
        self.image_verifier.verify_image(image, policy)

    def sign_blob(self, path: Path, bundle_path: Path):
        token = self._token()
        logger.debug("Signing %s as %s", path.name, token.identity)
        try:
            with self.signing_context.signer(token) as signer:
                bundle = signer.sign_artifact(input_=path.read_bytes())
        except SigstoreError as e:
            raise SigningError(f"Signing {path} failed: {e}") from e
        bundle_path.write_text(bundle.to_json(), encoding="utf-8")
        logger.info("Signed %s into %s", path.name, bundle_path.name)

    def verify_blob(self, path: Path, bundle_path: Path, policy: IdentityPolicy):
        try:
            bundle = Bundle.from_json(bundle_path.read_bytes())
        except (SigstoreError, ValueError) as e:
            raise SignatureInvalid(f"{bundle_path.name} is not a valid bundle: {e}") from e
        try:
            self.verifier.verify_artifact(
                input_=path.read_bytes(),
                bundle=bundle,
                policy=certificate_policy(policy),
            )
        except VerificationError as e:
            raise SignatureInvalid(
                f"{bundle_path.name} does not verify {path.name} for {policy}: {e}"
            ) from e
        logger.info("Verified %s with %s", path.name, bundle_path.name)
