from conductor.roles.base import RoleAgent, RoleRegistry
from conductor.roles.catalog import ROLE_CHARTERS, charter_for

__all__ = ["ROLE_CHARTERS", "RoleAgent", "RoleRegistry", "charter_for"]
