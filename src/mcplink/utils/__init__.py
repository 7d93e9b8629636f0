# ABOUTME: Utility modules for mcplink
# ABOUTME: Exports env expansion, backup, and validation functions

from mcplink.utils.backup import cleanup_old_backups, create_backup, get_backup_dir
from mcplink.utils.env import build_process_env, expand_env_vars, referenced_env_vars
from mcplink.utils.validation import (
    ValidationError,
    validate_command_exists,
    validate_descriptor,
)

__all__ = [
    "build_process_env",
    "expand_env_vars",
    "referenced_env_vars",
    "ValidationError",
    "validate_command_exists",
    "validate_descriptor",
    "cleanup_old_backups",
    "create_backup",
    "get_backup_dir",
]
