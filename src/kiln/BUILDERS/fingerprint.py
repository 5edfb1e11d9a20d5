"""
Content fingerprints of container definitions.
"""
import hashlib
import json
from typing import Any, Dict

from ..MODELS.spec_model import Container

FINGERPRINT_SCHEME = "kiln-image-v1"


def fingerprint_data(container: Container) -> Dict[str, Any]:
    """
    The canonical, serializable form of everything that determines a
    container's image: its name, its ordered steps and its environment.
    """
    return {
        "scheme": FINGERPRINT_SCHEME,
        "container": container.name,
        "setup": [step.fingerprint_data() for step in container.setup],
        "environ": dict(sorted(container.environ.items())),
    }


def compute_fingerprint(container: Container) -> str:
    """
    Computes the sha256 fingerprint of a container definition.

    :param container: The container.
    :return: Hex digest, used as the image cache key.
    """
    payload = json.dumps(fingerprint_data(container), sort_keys=True,
                         separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
