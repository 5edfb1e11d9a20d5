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
Symlinks that let commands be invoked directly under their symlink-name.
"""
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, Optional

from ..MODELS.spec_model import ProjectSpec

logger = logging.getLogger(__name__)


def kiln_executable() -> str:
    """Absolute path of the installed ``kiln`` entry point."""
    found = shutil.which("kiln")
    if found:
        return os.path.realpath(found)
    return os.path.realpath(sys.argv[0])


def update_symlinks(spec: ProjectSpec,
                    directory: Path,
                    target: Optional[str] = None) -> Dict[str, Path]:
    """
    Creates ``directory/<alias>`` -> kiln for every symlink alias.

    Existing links are replaced; regular files are left alone.

    Returns:
        Mapping of alias name to the created link.
    """
    target = target or kiln_executable()
    directory.mkdir(parents=True, exist_ok=True)
    created = {}
    for alias in sorted(spec.aliases):
        link = directory / alias
        if link.is_symlink():
            link.unlink()
        elif link.exists():
            logger.warning("Not replacing %s: it is not a symlink", link)
            continue
        link.symlink_to(target)
        created[alias] = link
    return created
