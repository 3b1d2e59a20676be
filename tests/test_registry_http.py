"""Tests for registry/http.py module.

Uses respx to mock the registry HTTP API.
"""

import httpx
import pytest
import respx

from kernel_imagegen.builds.gate import should_build
from kernel_imagegen.builds.tags import ImageIdentifier
from kernel_imagegen.errors import RegistryLookupError
from kernel_imagegen.registry.docker import DockerRegistry
from kernel_imagegen.registry.http import (
    MANIFEST_ACCEPT,
    HttpRegistryLookup,
    parse_bearer_challenge,
)

BASE_URL = "https://registry.example.com"
MANIFEST_URL = f"{BASE_URL}/v2/org/kernel/manifests/6.6.13-abc123-amd64"
CHALLENGE = (
    'Bearer realm="https://auth.example.com/token",'
    'service="registry.example.com",scope="repository:org/kernel:pull"'
)


@pytest.fixture
def image() -> ImageIdentifier:
    return ImageIdentifier("org", "kernel", "6.6.13", "abc123", "-amd64")


@pytest.fixture
def lookup():
    client = HttpRegistryLookup(BASE_URL, timeout=5)
    yield client
    client.close()


class TestParseBearerChallenge:
    """Tests for parse_bearer_challenge function."""

    def test_bearer(self) -> None:
        parsed = parse_bearer_challenge(CHALLENGE)
        assert parsed == {
            "realm": "https://auth.example.com/token",
            "service": "registry.example.com",
            "scope": "repository:org/kernel:pull",
        }

    def test_basic_is_unsupported(self) -> None:
        assert parse_bearer_challenge('Basic realm="registry"') is None

    def test_missing_realm(self) -> None:
        assert parse_bearer_challenge('Bearer service="x"') is None


class TestHttpRegistryLookup:
    """Tests for HttpRegistryLookup.exists."""

    def test_manifest_url(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        assert lookup.manifest_url(image) == MANIFEST_URL

    @respx.mock
    def test_found(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        route = respx.head(MANIFEST_URL).mock(return_value=httpx.Response(200))
        assert lookup.exists(image) is True
        assert route.calls.last.request.headers["Accept"] == MANIFEST_ACCEPT

    @respx.mock
    def test_not_found(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        respx.head(MANIFEST_URL).mock(return_value=httpx.Response(404))
        assert lookup.exists(image) is False

    @respx.mock
    def test_server_error(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        respx.head(MANIFEST_URL).mock(return_value=httpx.Response(503))
        with pytest.raises(RegistryLookupError, match="HTTP 503"):
            lookup.exists(image)

    @respx.mock
    def test_network_error(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        respx.head(MANIFEST_URL).mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(RegistryLookupError):
            lookup.exists(image)

    @respx.mock
    def test_token_challenge(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        """A 401 with a Bearer challenge is retried with a pull token."""
        route = respx.head(MANIFEST_URL).mock(
            side_effect=[
                httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE}),
                httpx.Response(200),
            ]
        )
        token_route = respx.get("https://auth.example.com/token").mock(
            return_value=httpx.Response(200, json={"token": "secret"})
        )

        assert lookup.exists(image) is True
        assert token_route.called
        token_params = token_route.calls.last.request.url.params
        assert token_params["scope"] == "repository:org/kernel:pull"
        assert token_params["service"] == "registry.example.com"
        assert route.calls.last.request.headers["Authorization"] == "Bearer secret"

    @respx.mock
    def test_token_endpoint_failure(
        self, lookup: HttpRegistryLookup, image: ImageIdentifier
    ) -> None:
        respx.head(MANIFEST_URL).mock(
            return_value=httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})
        )
        respx.get("https://auth.example.com/token").mock(
            return_value=httpx.Response(500)
        )
        with pytest.raises(RegistryLookupError):
            lookup.exists(image)

    @respx.mock
    def test_unsupported_auth(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        respx.head(MANIFEST_URL).mock(
            return_value=httpx.Response(401, headers={"WWW-Authenticate": "Basic realm=x"})
        )
        with pytest.raises(RegistryLookupError, match="unsupported authentication"):
            lookup.exists(image)

    @respx.mock
    def test_empty_token(self, lookup: HttpRegistryLookup, image: ImageIdentifier) -> None:
        respx.head(MANIFEST_URL).mock(
            return_value=httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})
        )
        respx.get("https://auth.example.com/token").mock(
            return_value=httpx.Response(200, json={})
        )
        with pytest.raises(RegistryLookupError, match="no token"):
            lookup.exists(image)

    @respx.mock
    def test_token_response_not_json(
        self, lookup: HttpRegistryLookup, image: ImageIdentifier
    ) -> None:
        """An HTML page from the token realm is a lookup failure."""
        respx.head(MANIFEST_URL).mock(
            return_value=httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})
        )
        respx.get("https://auth.example.com/token").mock(
            return_value=httpx.Response(200, text="<html>oops</html>")
        )
        with pytest.raises(RegistryLookupError, match="invalid JSON"):
            lookup.exists(image)

    @respx.mock
    def test_token_response_not_object(
        self, lookup: HttpRegistryLookup, image: ImageIdentifier
    ) -> None:
        respx.head(MANIFEST_URL).mock(
            return_value=httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})
        )
        respx.get("https://auth.example.com/token").mock(
            return_value=httpx.Response(200, json=["secret"])
        )
        with pytest.raises(RegistryLookupError, match="unexpected payload"):
            lookup.exists(image)


class TestHttpLookupGate:
    """Lookup failures over HTTP never block a rebuild."""

    @respx.mock
    def test_bad_token_response_triggers_build(self, image: ImageIdentifier) -> None:
        respx.head(MANIFEST_URL).mock(
            return_value=httpx.Response(401, headers={"WWW-Authenticate": CHALLENGE})
        )
        respx.get("https://auth.example.com/token").mock(
            return_value=httpx.Response(200, text="<html>oops</html>")
        )
        lookup = HttpRegistryLookup(BASE_URL, timeout=5)
        try:
            registry = DockerRegistry(lookup=lookup)
            assert should_build(image, force=False, registry=registry) is True
        finally:
            lookup.close()
