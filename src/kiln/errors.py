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
Exception hierarchy shared by every kiln component.
"""

from typing import Any, Optional


class KilnError(Exception):
    """Base class for all errors raised by kiln."""


class DefinitionError(KilnError):
    """The project file is malformed or internally inconsistent."""


class NotFoundError(KilnError):
    """A command, alias, container or project file could not be resolved."""

    def __init__(self, name: str, kind: str = "command"):
        self.name = name
        self.kind = kind
        super().__init__(f"Unknown {kind}: {name}")


class IntegrityError(KilnError):
    """
    Fetched content failed verification.

    Raised on a checksum mismatch, or when an archive entry would be written
    outside of its destination root.
    """

    def __init__(
        self,
        url: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.url = url
        self.expected = expected
        self.actual = actual
        self.detail = detail
        if detail:
            message = f"Integrity check failed for {url}: {detail}"
        else:
            message = (
                f"Checksum mismatch for {url}: expected {expected}, got {actual}"
            )
        super().__init__(message)


class ProvisionError(KilnError):
    """
    A setup step failed because an underlying service failed.

    Only errors flagged ``transient`` (network faults) are retried. An error
    flagged ``exhausted`` was a transient fault whose retries already ran out.
    """

    def __init__(
        self,
        step: Any,
        cause: Any,
        transient: bool = False,
        container: Optional[str] = None,
        exhausted: bool = False,
    ):
        self.step = step
        self.cause = cause
        self.transient = transient
        self.container = container
        self.exhausted = exhausted
        super().__init__(self._format())

    def _format(self) -> str:
        step = self.step.describe() if hasattr(self.step, "describe") else self.step
        where = f"container {self.container!r}, " if self.container else ""
        return f"Step failed ({where}step {step}): {self.cause}"

    def with_container(self, container: str) -> "ProvisionError":
        """Attach the container name once it is known."""
        self.container = container
        self.args = (self._format(),)
        return self
