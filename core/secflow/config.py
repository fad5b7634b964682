"""Shared SecFlow configuration utilities.

Centralises reading of ~/.secflow/configuration.json so the runner, the
volume manager and the execution context share one implementation.
"""

import json
import os
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

SECFLOW_CONFIG_FILE = Path.home() / ".secflow" / "configuration.json"

DEFAULT_DOCKER_BIN = "docker"
DEFAULT_HELPER_IMAGE = "alpine:latest"
DEFAULT_TENANT_ID = "default-tenant"
DEFAULT_PROGRESS_QUEUE_SIZE = 256
DEFAULT_HTTP_TIMEOUT = 30.0


def get_secflow_config() -> dict[str, Any]:
    """Load configuration from ~/.secflow/configuration.json."""
    if not SECFLOW_CONFIG_FILE.exists():
        return {}
    try:
        with open(SECFLOW_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_docker_bin() -> str:
    """Return the docker CLI binary (SECFLOW_DOCKER_BIN wins over the file)."""
    return os.environ.get("SECFLOW_DOCKER_BIN") or get_secflow_config().get("docker", {}).get(
        "bin", DEFAULT_DOCKER_BIN
    )


def get_helper_image() -> str:
    """Return the small image used to copy files in and out of volumes."""
    return os.environ.get("SECFLOW_HELPER_IMAGE") or get_secflow_config().get("docker", {}).get(
        "helper_image", DEFAULT_HELPER_IMAGE
    )


def get_default_tenant() -> str:
    return get_secflow_config().get("tenant_id", DEFAULT_TENANT_ID)


def get_progress_queue_size() -> int:
    size = get_secflow_config().get("progress", {}).get("queue_size", DEFAULT_PROGRESS_QUEUE_SIZE)
    return max(1, int(size))


def get_http_timeout() -> float:
    return float(get_secflow_config().get("http", {}).get("timeout", DEFAULT_HTTP_TIMEOUT))
