from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import identity, services
from .errors import Unauthorized

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """An authenticated caller with its role resolved server-side."""

    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == services.ROLE_ADMIN


def principal_from_token(token: Optional[str]) -> Principal:
    if not token:
        raise Unauthorized("Missing credentials")
    user_id = identity.decode_token(token, "access")
    if not identity.identity_exists(user_id):
        raise Unauthorized("User not found")
    return Principal(user_id=user_id, role=services.resolve_role(user_id))


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    return principal_from_token(credentials.credentials if credentials else None)

