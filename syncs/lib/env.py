"""Environment variable utilities.

Expands ${VAR_NAME} (and ${VAR_NAME:-default}) patterns in configuration
values and loads .env files through python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from syncs.lib.errors import ConfigurationError

__all__ = ["expand_env_vars", "expand_options", "load_env_file"]

# ${VAR_NAME}, ${VAR_NAME:-default} or $VAR_NAME
ENV_VAR_PATTERN = re.compile(
    r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)"
)


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to .env file. If None, searches for .env in the current
              directory and its parents.
        override: If True, override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand environment variables in a string.

    Args:
        value: String potentially containing env var references
        strict: If True, a missing variable without a default raises

    Raises:
        ConfigurationError: strict mode and a variable is not set

    Example:
        >>> os.environ["GITHUB_ORG"] = "acme"
        >>> expand_env_vars("${GITHUB_ORG}/${GITHUB_REPO:-widgets}")
        'acme/widgets'
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(3)
        default = match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        if strict:
            raise ConfigurationError(
                f"Environment variable not set: {var_name}",
                field=var_name,
                suggestion=f"Export {var_name} or add it to your .env file.",
            )
        return str(match.group(0))

    return ENV_VAR_PATTERN.sub(replacer, value)


def _expand_value(value: Any, strict: bool) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value, strict=strict)
    if isinstance(value, dict):
        return expand_options(value, strict=strict)
    if isinstance(value, list):
        items: List[Any] = [_expand_value(item, strict) for item in value]
        return items
    return value


def expand_options(options: Dict[str, Any], *, strict: bool = False) -> Dict[str, Any]:
    """Recursively expand environment variables in an options dict.

    Example:
        >>> os.environ["CIRCLECI_TOKEN"] = "abc"
        >>> expand_options({"auth": {"token": "${CIRCLECI_TOKEN}"}, "page_size": 100})
        {'auth': {'token': 'abc'}, 'page_size': 100}
    """
    return {key: _expand_value(value, strict) for key, value in options.items()}
