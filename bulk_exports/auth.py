"""Authorization gate: API key scope to allowed HTTP methods."""

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from bulk_exports.errors import Forbidden, Unauthorized
from bulk_exports.models import ApiKey, ApiKeyScope

READ_METHODS = frozenset({"GET", "HEAD"})

SCOPE_ALLOWED_METHODS: Dict[ApiKeyScope, FrozenSet[str]] = {
    ApiKeyScope.READ: READ_METHODS,
    ApiKeyScope.WRITE: READ_METHODS | {"POST"},
    ApiKeyScope.ADMIN: READ_METHODS | {"POST", "PUT", "PATCH", "DELETE"},
}


def allowed_methods(scope: ApiKeyScope) -> FrozenSet[str]:
    return SCOPE_ALLOWED_METHODS[ApiKeyScope(scope)]


def is_method_allowed(scope: ApiKeyScope, method: str) -> bool:
    """Whether a key with ``scope`` may issue a request with ``method``."""
    return method.upper() in allowed_methods(scope)


def check_scope(scope: ApiKeyScope, method: str) -> None:
    """
    Raises:
        Forbidden: If ``scope`` does not allow ``method``
    """
    if not is_method_allowed(scope, method):
        raise Forbidden()


def authorize(api_key: Optional[ApiKey], method: str, now: Optional[datetime] = None) -> ApiKey:
    """
    Gate a request.

    Raises:
        Unauthorized: If the key is missing, revoked or expired
        Forbidden: If the key's scope does not allow the method
    """
    if api_key is None or not api_key.is_usable(now):
        raise Unauthorized()
    check_scope(api_key.scope, method)
    return api_key
