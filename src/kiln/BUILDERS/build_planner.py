# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Build planning: reusing committed images, and building missing ones step by
step into a fresh build root that is committed only once every step succeeded.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, List

from ..errors import ProvisionError
from ..MODELS.build_image import BuildImage
from ..MODELS.spec_model import Container
from ..REGISTRY.image_cache import ImageCache
from ..UTILS.retry import transient_retrying
from .fingerprint import compute_fingerprint
from .step_executor import StepExecutor

logger = logging.getLogger(__name__)


class BuildPlanner:
    """
    Ensures an up-to-date image exists for a container.

    Builds of one fingerprint are serialized: within the process by a
    per-fingerprint lock, across processes by a lock file in the cache.
    Builds of different fingerprints do not wait on each other.
    """

    def __init__(self,
                 cache: ImageCache,
                 executor: StepExecutor,
                 retry_attempts: int = 3,
                 retry_backoff: float = 1.0):
        """
        Initializes the planner.

        :param cache: The opened image cache.
        :param executor: Applies setup steps.
        :param retry_attempts: Attempts per step for transient failures.
        :param retry_backoff: Backoff multiplier between attempts, in seconds.
        """
        self.cache = cache
        self.executor = executor
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        # fingerprint -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[str, List] = {}
        self._locks_guard = threading.Lock()

    def fingerprint(self, container: Container) -> str:
        return compute_fingerprint(container)

    @contextmanager
    def _build_lock(self, fingerprint: str):
        """Holds the in-process lock for a fingerprint, dropping it once unused."""
        with self._locks_guard:
            entry = self._locks.setdefault(fingerprint, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[fingerprint]

    def ensure_image(self, container: Container, force: bool = False) -> BuildImage:
        """
        Returns the committed image for ``container``, building it if needed.

        :param container: The container definition.
        :param force: Rebuild even if a committed image exists.
        :return: The committed image.
        :raises ProvisionError: If a step failed; nothing is committed.
        :raises IntegrityError: If fetched content failed verification.
        """
        fingerprint = self.fingerprint(container)
        if not force:
            image = self.cache.lookup(fingerprint)
            if image is not None:
                logger.debug("Container %s is up to date (%s)", container.name, fingerprint[:12])
                return image

        with self._build_lock(fingerprint), self.cache.lock(fingerprint):
            if not force:
                # Another caller may have finished the build while we waited
                image = self.cache.lookup(fingerprint)
                if image is not None:
                    return image
            return self._build(container, fingerprint)

    def _build(self, container: Container, fingerprint: str) -> BuildImage:
        root = self.cache.allocate_build_root(fingerprint)
        total = len(container.setup)
        logger.info("Building container %s (%s): %d steps", container.name, fingerprint[:12], total)
        committed = False
        try:
            for index, step in enumerate(container.setup, 1):
                logger.info("[%s] step %d/%d: %s", container.name, index, total, step.describe())
                for attempt in transient_retrying(self.retry_attempts, self.retry_backoff):
                    with attempt:
                        self.executor.apply(step, root)
            # Mount point for the project directory
            (root / "work").mkdir(exist_ok=True)
            image = self.cache.commit(fingerprint, container.name, root)
            committed = True
            return image
        except ProvisionError as e:
            raise e.with_container(container.name)
        finally:
            if not committed:
                self.cache.discard(root)
