"""Provider ID format: ``kubevirt://<namespace>/<name>``."""
from __future__ import annotations

from .config import PROVIDER_ID_SCHEME


def format_provider_id(namespace: str, name: str) -> str:
    return f"{PROVIDER_ID_SCHEME}://{namespace}/{name}"
