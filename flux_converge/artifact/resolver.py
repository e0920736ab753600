"""Resolve the digest of OCI artifacts."""

from abc import ABC, abstractmethod
import asyncio
import base64
from dataclasses import dataclass
import hashlib
import json
import logging
from typing import Any

from oras.client import OrasClient

from flux_converge.exceptions import ArtifactException

__all__ = [
    "Auth",
    "ArtifactResolver",
    "OrasArtifactResolver",
    "get_auth_from_secret",
]

_LOGGER = logging.getLogger(__name__)

OCI_PREFIX = "oci://"
MANIFEST_MEDIA_TYPES = [
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
]
DIGEST_HEADER = "Docker-Content-Digest"


@dataclass
class Auth:
    """Registry credentials."""

    username: str
    password: str


def _secret_value(secret: dict[str, Any], key: str) -> str | None:
    if (value := (secret.get("stringData") or {}).get(key)) is not None:
        return str(value)
    if (value := (secret.get("data") or {}).get(key)) is not None:
        return base64.b64decode(value).decode("utf-8")
    return None


def registry_host(url: str) -> str:
    """Return the registry host of an artifact URL."""
    return url.removeprefix(OCI_PREFIX).split("/", 1)[0]


def get_auth_from_secret(url: str, secret: dict[str, Any]) -> Auth | None:
    """Return the credentials for the artifact registry from a Secret document.

    Both `kubernetes.io/dockerconfigjson` and basic auth secrets are supported.
    """
    name = (secret.get("metadata") or {}).get("name")
    if (docker_config_json := _secret_value(secret, ".dockerconfigjson")) is None:
        username = _secret_value(secret, "username")
        password = _secret_value(secret, "password")
        if username is None or password is None:
            raise ArtifactException(
                f"Secret {name} does not contain .dockerconfigjson or username/password"
            )
        return Auth(username=username, password=password)

    try:
        docker_config = json.loads(docker_config_json)
    except json.JSONDecodeError as err:
        raise ArtifactException(
            f"Secret {name} contains invalid .dockerconfigjson"
        ) from err

    host = registry_host(url)
    if not (server_auth := (docker_config.get("auths") or {}).get(host)):
        _LOGGER.debug("No auth found for server %s in secret %s", host, name)
        return None
    if username := server_auth.get("username"):
        return Auth(username=username, password=server_auth.get("password", ""))
    if not (auth_str := server_auth.get("auth")):
        return None
    username, password = base64.b64decode(auth_str).decode("utf-8").split(":", 1)
    return Auth(username=username, password=password)


class ArtifactResolver(ABC):
    """Resolves a mutable artifact reference to its content digest."""

    @abstractmethod
    async def resolve_digest(self, url: str, auth: Auth | None = None) -> str:
        """Return the `sha256:...` digest the reference currently points to."""


class OrasArtifactResolver(ArtifactResolver):
    """Resolves digests by fetching the manifest from the registry with oras."""

    def __init__(self, insecure: bool = False) -> None:
        self._insecure = insecure

    async def resolve_digest(self, url: str, auth: Auth | None = None) -> str:
        return await asyncio.to_thread(self._resolve, url, auth)

    def _resolve(self, url: str, auth: Auth | None) -> str:
        target = url.removeprefix(OCI_PREFIX)
        _LOGGER.debug("Resolving digest of %s", target)
        try:
            client = OrasClient(insecure=self._insecure)
            if auth:
                _LOGGER.info("Using authentication for OCI artifact %s", url)
                client.login(
                    hostname=registry_host(url),
                    username=auth.username,
                    password=auth.password,
                )
            remote = client.remote
            container = remote.get_container(target)
            response = remote.do_request(
                f"{remote.prefix}://{container.manifest_url()}",
                "GET",
                headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)},
            )
        except Exception as err:
            raise ArtifactException(f"failed to resolve {url}: {err}") from err
        if response.status_code != 200:
            raise ArtifactException(
                f"failed to resolve {url}: {response.status_code} {response.reason}"
            )
        if digest := response.headers.get(DIGEST_HEADER):
            return str(digest)
        return "sha256:" + hashlib.sha256(response.content).hexdigest()
