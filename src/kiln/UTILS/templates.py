"""Install script templating."""

import logging
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError, meta

logger = logging.getLogger(__name__)

# Names an install script may reference, e.g. ``--prefix=@@{ prefix }@@``
SCRIPT_VARIABLES = frozenset({"prefix", "root", "srcdir"})

# Shell code uses ``{{``, ``{%`` and ``{#`` freely (awk bodies, ``${#var}``),
# so scripts get markers of their own and everything else is passed through.
_environment = Environment(
    variable_start_string="@@{",
    variable_end_string="}@@",
    block_start_string="@@{%",
    block_end_string="%}@@",
    comment_start_string="@@{#",
    comment_end_string="#}@@",
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def validate_script(script: str) -> None:
    """
    Check that a script template parses and only uses known variables.

    :raises ValueError: On a syntax error or an unknown variable.
    """
    try:
        ast = _environment.parse(script)
    except TemplateError as e:
        raise ValueError(f"Invalid script template: {e}") from e
    unknown = meta.find_undeclared_variables(ast) - SCRIPT_VARIABLES
    if unknown:
        raise ValueError(f"Unknown script variables: {', '.join(sorted(unknown))}")


def render_script(script: str, **context: Any) -> str:
    """Render an install script template with the given substitutions."""
    try:
        return _environment.from_string(script).render(**context)
    except TemplateError as e:
        logger.error(f"Script rendering error: {e}")
        raise
