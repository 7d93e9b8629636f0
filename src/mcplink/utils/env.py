# Environment variable helpers
import os
import re
import warnings
from typing import Mapping

# ABOUTME: Pattern matches ${VAR_NAME} where VAR_NAME is uppercase with underscores
ENV_VAR_PATTERN = re.compile(r'\$\{([A-Z_][A-Z0-9_]*)\}')


def expand_env_vars(value: str, environ: Mapping[str, str] | None = None) -> str:
    """Expand environment variables in ${VAR} format.

    ABOUTME: Supports ${VAR_NAME} syntax for environment variable expansion
    ABOUTME: Leaves unknown references in place and warns

    Args:
        value: String potentially containing ${VAR} references
        environ: Mapping to resolve from (default: os.environ)

    Returns:
        String with environment variables expanded

    Examples:
        >>> expand_env_vars("${HOME}/projects")
        '/Users/user/projects'
        >>> expand_env_vars("npx -y ${UNSET_VAR}")
        'npx -y ${UNSET_VAR}'  # with warning
    """
    source = os.environ if environ is None else environ

    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        if var_name in source:
            return source[var_name]
        warnings.warn(
            f"Environment variable '{var_name}' not found, keeping original",
            UserWarning,
            stacklevel=3
        )
        return match.group(0)

    return ENV_VAR_PATTERN.sub(replace_var, value)


def referenced_env_vars(value: str) -> list[str]:
    """Names of every ${VAR} reference in value, in order of appearance."""
    return [match.group(1) for match in ENV_VAR_PATTERN.finditer(value)]


def build_process_env(overrides: Mapping[str, str]) -> dict[str, str]:
    """Environment for a server child process.

    ABOUTME: The host environment with the descriptor's overrides on top
    """
    env = dict(os.environ)
    env.update(overrides)
    return env
