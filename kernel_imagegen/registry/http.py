"""Registry HTTP API v2 existence lookups.

Answers "does this tag exist" without a docker daemon, by sending a HEAD
request for the manifest. Registries that require a token for anonymous
pulls (Docker Hub) answer 401 with a Bearer challenge; a pull token is
fetched from the advertised realm and the request retried once.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import httpx

from kernel_imagegen.errors import RegistryLookupError

if TYPE_CHECKING:
    from kernel_imagegen.builds.tags import ImageIdentifier

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
    ]
)

CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_bearer_challenge(header: str) -> dict[str, str] | None:
    """Parse a ``WWW-Authenticate: Bearer ...`` header.

    Args:
        header: Header value.

    Returns:
        Dict of challenge parameters (realm, service, scope), or None if
        the challenge is not a Bearer challenge with a realm.
    """
    scheme, _, params = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    parsed = dict(CHALLENGE_PARAM.findall(params))
    if "realm" not in parsed:
        return None
    return parsed


class HttpRegistryLookup:
    """Manifest existence lookups over the registry HTTP API.

    Args:
        base_url: Registry API base URL (e.g. https://registry-1.docker.io).
        timeout: Request timeout in seconds.
        client: Optional preconfigured HTTPX client.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def manifest_url(self, identifier: ImageIdentifier) -> str:
        """URL of the manifest of an identifier."""
        return f"{self.base_url}/v2/{identifier.repository}/manifests/{identifier.tag}"

    def _fetch_token(self, challenge: dict[str, str], repository: str) -> str:
        params = {"service": challenge.get("service", "")}
        params["scope"] = challenge.get("scope", f"repository:{repository}:pull")
        response = self.client.get(challenge["realm"], params=params)
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise RegistryLookupError(
                f"Token endpoint returned invalid JSON for {repository}"
            ) from e
        if not isinstance(payload, dict):
            raise RegistryLookupError(
                f"Token endpoint returned unexpected payload for {repository}"
            )
        token = payload.get("token") or payload.get("access_token")
        if not token:
            raise RegistryLookupError(f"Token endpoint returned no token for {repository}")
        return token

    def exists(self, identifier: ImageIdentifier) -> bool:
        """Check whether the identifier's manifest exists.

        Returns:
            True on 200, False on 404.

        Raises:
            RegistryLookupError: On network errors, auth failures or any
                other unexpected status.
        """
        url = self.manifest_url(identifier)
        headers = {"Accept": MANIFEST_ACCEPT}
        try:
            response = self.client.head(url, headers=headers)
            if response.status_code == 401:
                challenge = parse_bearer_challenge(
                    response.headers.get("www-authenticate", "")
                )
                if challenge is None:
                    raise RegistryLookupError(
                        f"Registry requires unsupported authentication for {url}"
                    )
                token = self._fetch_token(challenge, identifier.repository)
                headers["Authorization"] = f"Bearer {token}"
                response = self.client.head(url, headers=headers)
        except httpx.HTTPError as e:
            raise RegistryLookupError(f"Lookup of {identifier.reference} failed: {e}") from e

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise RegistryLookupError(
            f"Lookup of {identifier.reference} returned HTTP {response.status_code}"
        )

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self.client.close()


__all__ = ["MANIFEST_ACCEPT", "HttpRegistryLookup", "parse_bearer_challenge"]
