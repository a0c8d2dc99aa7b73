"""
AuthLedger — service_auth.py
─────────────────────────────────────────────────────────────────
Service-to-service authentication for the internal APIs.

Callers send:
    X-Service-Name: order-service
    X-API-Key:      <key from SERVICE_API_KEYS>

Registry (built once from config, read-only):
    name → key → permitted operations {credit, debit, balance, ...}

Every internal route declares the operation it performs:

    @router.post("/credit")
    async def credit(service = Depends(require_service("credit"))): ...

  missing header / unknown name / wrong key → 401
  valid service without that permission     → 403
─────────────────────────────────────────────────────────────────
"""

import hmac
import logging
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional

from fastapi import Header, Request

from authledger.core.errors import ForbiddenError, UnauthorizedError

logger = logging.getLogger("authledger.service_auth")

PERM_CREDIT      = "credit"
PERM_DEBIT       = "debit"
PERM_BALANCE     = "balance"
PERM_TRANSACTION = "transaction"
PERM_USERS       = "users"
PERM_REFERRERS   = "referrers"


@dataclass(frozen=True)
class ServiceIdentity:
    name:        str
    permissions: FrozenSet[str]

    def can(self, permission: str) -> bool:
        return permission in self.permissions


class ServiceAuthenticator:
    def __init__(self, api_keys: Mapping[str, str], permissions: Mapping[str, FrozenSet[str]]):
        self.api_keys    = api_keys
        self.permissions = permissions

    def authenticate(self, api_key: Optional[str], service_name: Optional[str]) -> ServiceIdentity:
        if not api_key or not service_name:
            raise UnauthorizedError("Service authentication required")

        expected = self.api_keys.get(service_name)
        if expected is None or not hmac.compare_digest(expected.encode(), api_key.encode()):
            logger.warning(f"Rejected service credentials for '{service_name}'")
            raise UnauthorizedError("Invalid service credentials")

        return ServiceIdentity(
            name        = service_name,
            permissions = frozenset(self.permissions.get(service_name, ())),
        )


def require_service(permission: str):
    """Dependency factory: authenticate the caller and check one permission."""

    async def dependency(
        request: Request,
        x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
        x_service_name: Optional[str] = Header(None, alias="X-Service-Name"),
    ) -> ServiceIdentity:
        auth: ServiceAuthenticator = request.app.state.service_auth
        service = auth.authenticate(x_api_key, x_service_name)
        if not service.can(permission):
            logger.warning(f"Service '{service.name}' lacks '{permission}' permission")
            raise ForbiddenError(f"Service '{service.name}' is not permitted to {permission}")
        request.state.service = service
        return service

    return dependency
