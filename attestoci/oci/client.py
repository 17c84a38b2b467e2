from __future__ import annotations

import hashlib
import logging
import re
from typing import Protocol
from urllib.parse import urlparse, urlunparse

import httpx

from attestoci.errors import AuthenticationError, NotFoundError, TransferError

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"

MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryClient(Protocol):
    """Read-only view on a content-addressed registry."""

    def pull_manifest(self, name: str, reference: str) -> dict: ...

    def pull_blob(self, name: str, digest: str) -> bytes: ...


def _clean_url(registry_url: str) -> str:
    if "://" not in registry_url:
        registry_url = f"https://{registry_url}"
    parts = urlparse(registry_url)
    if parts.netloc == "docker.io":
        parts = parts._replace(netloc=DOCKER_HUB)
    return urlunparse(parts).rstrip("/")


def _parse_www_auth(www_authenticate: str) -> dict[str, str]:
    """Parse the parameters of a WWW-Authenticate challenge

    Values are quoted and can contain commas, e.g. scope="repository:a:pull,push".
    """
    return dict(_CHALLENGE_PARAM.findall(www_authenticate))


def _registry_errors(response: httpx.Response) -> str:
    """Format the error codes a registry returns in the response body

    ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#error-codes
    """
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        return ""
    return "; ".join(f"{e.get('code')}: {e.get('message')}" for e in errors)


def _raise_for_status(response: httpx.Response):
    if response.is_success:
        return
    details = _registry_errors(response)
    message = f"{response.request.method} {response.request.url} returned {response.status_code}"
    if details:
        message = f"{message} ({details})"
    if response.status_code == 404:
        raise NotFoundError(message)
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise TransferError(message) from e


def check_digest(data: bytes, digest: str):
    """Raise TransferError when `data` does not hash to `digest`"""
    algorithm, _, expected = digest.partition(":")
    try:
        actual = hashlib.new(algorithm, data).hexdigest()
    except ValueError as e:
        raise TransferError(f"Unsupported digest algorithm: {digest}") from e
    if actual != expected:
        raise TransferError(
            f"Content does not match digest {digest}, got {algorithm}:{actual}"
        )


class BearerAuth:
    """Attaches HTTP Bearer Authentication to the given Request object."""

    def __init__(self, token: str):
        self.token = token

    def __call__(self, request):
        request.headers["Authorization"] = f"Bearer {self.token}"
        return request


class Client:
    """Client for the pull side of the OCI registry API."""

    def __init__(
        self,
        registry_url: str,
        username: str | None = None,
        password: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.registry_url = _clean_url(registry_url)
        self.username = username
        self.password = password
        self._transport = transport
        self._session = None
        self._auth: dict[str, httpx.Auth | BearerAuth] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def session(self) -> httpx.Client:
        if self._session is None:
            self._session = httpx.Client(
                follow_redirects=True,
                max_redirects=2,
                transport=self._transport,
            )
        return self._session

    def close(self):
        if self._session is not None:
            self._session.close()
            self._session = None

    def _send(self, uri: str, scope: str, **kwargs) -> httpx.Response:
        try:
            return self.session.get(
                f"{self.registry_url}{uri}", auth=self._auth.get(scope), **kwargs
            )
        except httpx.HTTPError as e:
            raise TransferError(f"GET {self.registry_url}{uri} failed: {e}") from e

    def get(self, uri: str, name: str, **kwargs) -> httpx.Response:
        """GET `uri`, authenticating for pull access to repository `name` when challenged"""
        scope = f"repository:{name}:pull"
        response = self._send(uri, scope, **kwargs)
        if response.status_code == 401:
            self.authenticate(response.headers.get("WWW-Authenticate", ""), scope)
            response = self._send(uri, scope, **kwargs)
            if response.status_code == 401:
                raise AuthenticationError(
                    f"{self.registry_url} rejected the credentials for {name}"
                )
        _raise_for_status(response)
        return response

    def authenticate(self, www_authenticate: str, scope: str):
        """Answer an authentication challenge for `scope`

        Bearer challenges use the token api, with basic authentication when
        credentials are given and anonymously otherwise.

        ref: https://distribution.github.io/distribution/spec/auth/token/
        """
        logger.debug("Authentication challenge: %s", www_authenticate)
        if www_authenticate.startswith("Basic"):
            if not self.password:
                raise AuthenticationError(
                    f"{self.registry_url} requires authentication, "
                    f"provide a username and/or password."
                )
            self._auth[scope] = httpx.BasicAuth(self.username or "", self.password)
            return
        if not www_authenticate.startswith("Bearer"):
            raise AuthenticationError(
                f"Unsupported authentication challenge from {self.registry_url}: "
                f"{www_authenticate!r}"
            )

        challenge = _parse_www_auth(www_authenticate)
        if "realm" not in challenge:
            raise AuthenticationError(f"No token realm in {www_authenticate!r}")
        params = {"scope": challenge.get("scope", scope)}
        if "service" in challenge:
            params["service"] = challenge["service"]
        auth = None
        if self.password:
            params["client_id"] = self.username or ""
            auth = (self.username or "", self.password)
        try:
            response = self.session.get(challenge["realm"], params=params, auth=auth)
        except httpx.HTTPError as e:
            raise TransferError(f"Token request to {challenge['realm']} failed: {e}") from e
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{challenge['realm']} refused a token for {params['scope']}"
            )
        _raise_for_status(response)
        payload = response.json()
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise AuthenticationError(f"{challenge['realm']} returned no token")
        self._auth[scope] = BearerAuth(token)

    def pull_manifest(
        self,
        name: str,
        reference: str,
        media_type: str = ", ".join(MANIFEST_MEDIA_TYPES),
    ) -> dict:
        """Pull the manifest or index `reference` of repository `name`

        When `reference` is a digest the response body is checked against it.
        """
        uri = f"/v2/{name}/manifests/{reference}"
        response = self.get(uri, name=name, headers={"Accept": media_type})
        if ":" in reference:
            check_digest(response.content, reference)
        try:
            data = response.json()
        except ValueError as e:
            raise TransferError(f"{name}@{reference} is not a JSON document") from e
        if not isinstance(data, dict):
            raise TransferError(f"{name}@{reference} is not a JSON object")
        return data

    def pull_blob(self, name: str, digest: str) -> bytes:
        uri = f"/v2/{name}/blobs/{digest}"
        response = self.get(uri, name=name)
        check_digest(response.content, digest)
        return response.content
