"""Image pull secret for a private registry."""

import base64
import json
import logging
from typing import Any

from .config import RegistryOptions
from .manifest import PULL_SECRET_NAME

_LOGGER = logging.getLogger(__name__)

DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"


def docker_config_json(registry: RegistryOptions) -> bytes:
    """Return a docker config.json authorizing access to the registry."""
    auth = base64.b64encode(
        f"{registry.username}:{registry.password}".encode()
    ).decode()
    config = {"auths": {registry.endpoint: {"auth": auth}}}
    return json.dumps(config).encode()


def pull_secret_for_registry(
    registry: RegistryOptions, namespace: str | None = None
) -> dict[str, Any] | None:
    """Return the pull secret object for the registry.

    Returns None when the registry does not need credentials.
    """
    if not registry.requires_auth:
        return None
    metadata: dict[str, Any] = {"name": PULL_SECRET_NAME}
    if namespace:
        metadata["namespace"] = namespace
    _LOGGER.debug("Creating pull secret for registry %s", registry.endpoint)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": metadata,
        "type": DOCKER_CONFIG_JSON_TYPE,
        "data": {
            DOCKER_CONFIG_JSON_KEY: base64.b64encode(
                docker_config_json(registry)
            ).decode(),
        },
    }
