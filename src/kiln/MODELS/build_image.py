"""
Models representing committed build images in the cache.
"""
from pydantic import BaseModel


class BuildImage(BaseModel):
    """
    A committed filesystem image produced by applying all of a container's
    setup steps. Keyed by the container fingerprint.
    """
    fingerprint: str
    container: str
    path: str
    created: str = ""
    size: int = 0
