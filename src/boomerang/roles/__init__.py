from boomerang.roles.base import (
    CallableRole,
    Role,
    RoleBinding,
    RoleExecutionError,
    RoleRegistry,
    RoleRequest,
)
from boomerang.roles.command import CommandRole
from boomerang.roles.template import TemplateRole

__all__ = [
    "CallableRole",
    "CommandRole",
    "Role",
    "RoleBinding",
    "RoleExecutionError",
    "RoleRegistry",
    "RoleRequest",
    "TemplateRole",
]
