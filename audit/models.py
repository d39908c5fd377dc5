"""
audit/models.py -- Audit record shape and the closed action/resource kinds.

Records are append-only: inserted once, never updated or deleted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class AuditAction(str, Enum):
    CREATE_USER = "CREATE_USER"
    UPDATE_USER = "UPDATE_USER"
    UPDATE_USER_2FA = "UPDATE_USER_2FA"
    DELETE_USER = "DELETE_USER"
    RESET_PASSWORD = "RESET_PASSWORD"
    CHANGE_ROLE = "CHANGE_ROLE"
    CHANGE_PASSWORD = "CHANGE_PASSWORD"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    FAILED_LOGIN = "FAILED_LOGIN"
    CREATE_TECHPACK = "CREATE_TECHPACK"
    UPDATE_TECHPACK = "UPDATE_TECHPACK"
    DELETE_TECHPACK = "DELETE_TECHPACK"
    SHARE_TECHPACK = "SHARE_TECHPACK"
    UPDATE_SHARE = "UPDATE_SHARE"
    REVOKE_SHARE = "REVOKE_SHARE"


class AuditResource(str, Enum):
    user = "user"
    techpack = "techpack"
    auth = "auth"
    system = "system"


@dataclass
class AuditRecord:
    """One privileged action.

    actor_id is None for actions with no authenticated actor (a failed login
    against an unknown email). details is a free-form JSON object.

    id is None before the record is written to the database.
    """

    action: AuditAction
    resource: AuditResource
    actor_id: Optional[int] = None
    actor_email: str = ""
    resource_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    timestamp: str = ""  # ISO 8601, stamped when recorded
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "actor_email": self.actor_email,
            "action": self.action.value,
            "resource": self.resource.value,
            "resource_id": self.resource_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp,
        }


@dataclass
class AuditPage:
    records: list[AuditRecord]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0
