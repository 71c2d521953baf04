import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from datetime import datetime
from typing import Deque, Dict, List, Optional
from pydantic import BaseModel

from core.config import AppSettings

class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"

@dataclass(frozen=True)
class Caller:
    """An authenticated caller of the HTTP service."""
    user_id: str
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

class AuditLogEntry(BaseModel):
    timestamp: datetime
    user: str
    action: str
    resource: str
    status: str

class RBACService:
    def __init__(self, max_audit_entries: int = 1000):
        self.roles: Dict[str, List[str]] = {
            "admin": ["*"],
            "user": ["prd:read", "prd:write", "prd:delete"],
        }
        self.audit_log: Deque[AuditLogEntry] = deque(maxlen=max_audit_entries)
        self.logger = logging.getLogger("prdgen.security")

    def check_permission(self, user_role: Role, action: str, resource: str) -> bool:
        """Checks a permission and records the attempt."""
        allowed = any(
            perm == "*" or perm == f"{resource}:{action}"
            for perm in self.roles.get(user_role.value, [])
        )

        self.audit_log.append(
            AuditLogEntry(
                timestamp=datetime.now(),
                user=user_role.value,
                action=action,
                resource=resource,
                status="ALLOWED" if allowed else "DENIED"
            )
        )

        if not allowed:
            self.logger.warning(f"Access denied for {user_role.value} on {resource}:{action}")

        return allowed

    def can_delete_prd(self, caller: Caller, owner_id: str) -> bool:
        """Owners may delete their own PRDs, admins may delete any."""
        if caller.is_admin:
            return self.check_permission(caller.role, "delete", "prd")
        return caller.user_id == owner_id and self.check_permission(caller.role, "delete", "prd")

    def get_audit_logs(self, limit: int = 100) -> List[AuditLogEntry]:
        """Returns the newest audit entries."""
        return sorted(self.audit_log, key=lambda x: x.timestamp, reverse=True)[:limit]

class TokenAuthenticator:
    """Maps bearer tokens to callers using the AUTH_TOKENS setting."""

    def __init__(self, settings: AppSettings):
        self._tokens = dict(settings.AUTH_TOKENS)
        self._admins = set(settings.ADMIN_USER_IDS)

    def authenticate(self, authorization: Optional[str]) -> Optional[Caller]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        user_id = self._tokens.get(token.strip())
        if not user_id:
            return None
        role = Role.ADMIN if user_id in self._admins else Role.USER
        return Caller(user_id=user_id, role=role)
