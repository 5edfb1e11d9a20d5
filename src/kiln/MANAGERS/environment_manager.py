"""
Manager for the environment commands and setup scripts run with.
"""
from typing import Dict, Mapping, Optional

from ..MODELS.spec_model import Container

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class EnvironmentManager:
    """
    Builds the environment overlay for a container.

    Nothing is inherited from the invoking process: the result is a minimal
    base (a standard PATH) with the container's ``environ`` layered on top.
    """
    def __init__(self, base: Optional[Mapping[str, str]] = None):
        """
        Initializes the environment manager.

        :param base: Base environment. Defaults to just a standard PATH.
        """
        self.base = dict(base) if base is not None else {"PATH": DEFAULT_PATH}

    def get_merged_environment(self, container: Container) -> Dict[str, str]:
        """
        Merges the base environment with the container's declared one.
        The container wins on key collisions.

        :param container: The container whose environment is applied.
        :return: A new dictionary with the merged environment.
        """
        merged_env = dict(self.base)
        merged_env.update(container.environ)
        return merged_env
