"""
auth/guard.py -- Request-time permission decision.

PermissionGuard.evaluate() answers one question per request: may this
principal call this (method, path)? It returns a GuardDecision rather than
raising, so the HTTP layer decides how a rejection is rendered and tests can
assert on the decision directly.

Decision procedure:
  1. Route lookup in the frozen RouteRegistry. Unregistered -> 403300.
  2. Public expression ":" -> allow, no identity needed.
  3. Expression must be "resource:action" with both parts non-empty -> else 403200.
  4. No principal -> 401 (the token's own error when a bad token was presented).
  5. Subject row checks. Clients: missing/deleted, then revoked, then the
     long-lived token hash when one is configured. Users: missing/deleted.
  6. Load the subject's permission rows and build its tree.
  7. Allow on a matching grant (see permits()).
  8. Otherwise 403100.

Every request re-reads the store; there is no permission cache, so a revoked
client or a removed role takes effect on the very next request.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from auth.denormalize import build_subject_tree, flatten_grants
from auth.errors import (
    AuthenticationError,
    AuthError,
    AuthorizationError,
    ConfigurationError,
    StoreError,
)
from auth.models import Client, Principal
from auth.registry import PUBLIC, RouteRegistry
from auth.store import IdentityStore
from auth.tokens import verify_long_lived_token

logger = logging.getLogger("gatehouse.guard")

WILDCARD_RESOURCE = "OAUTH2_global"
WILDCARD_ACTION = "*"

ROUTE_NOT_REGISTERED = 403300


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    error: AuthError | None = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, error: AuthError) -> "GuardDecision":
        return cls(allowed=False, error=error)


def parse_expression(expression: str) -> tuple[str, str]:
    """Split "resource:action". Raises ConfigurationError (403200) when malformed."""
    parts = expression.split(":")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ConfigurationError(f"Bad guard input: {expression!r}")
    return parts[0], parts[1]


def permits(grants: Iterable[tuple[str, Iterable[str]]], resource: str, action: str) -> bool:
    """True if any (resource name, actions) grant covers resource:action.

    OAUTH2_global with "*" covers everything; "*" on a resource covers every
    action on it; otherwise the exact action must be listed.
    """
    for name, actions in grants:
        actions = list(actions)
        if name == WILDCARD_RESOURCE and WILDCARD_ACTION in actions:
            return True
        if name == resource and (WILDCARD_ACTION in actions or action in actions):
            return True
    return False


class PermissionGuard:
    """Stateless decision procedure over a frozen registry and a store."""

    def __init__(self, registry: RouteRegistry, store: IdentityStore) -> None:
        self.registry = registry
        self.store = store

    def evaluate(
        self,
        method: str,
        path: str,
        path_params: Mapping[str, object] | None,
        principal: Principal | None,
        presented_token: str | None = None,
        token_error: AuthError | None = None,
    ) -> GuardDecision:
        expression = self.registry.lookup(method, path, path_params)
        if expression is None:
            logger.warning("Guard: no expression registered for %s %s", method, path)
            return GuardDecision.deny(ConfigurationError("Route is not registered with the guard", ROUTE_NOT_REGISTERED))
        if expression == PUBLIC:
            return GuardDecision.allow()

        try:
            resource, action = parse_expression(expression)
        except ConfigurationError as exc:
            logger.error("Guard: malformed expression %r on %s %s", expression, method, path)
            return GuardDecision.deny(exc)

        if principal is None:
            return GuardDecision.deny(token_error or AuthenticationError())

        try:
            return self._evaluate_subject(principal, presented_token, resource, action)
        except SQLAlchemyError as exc:
            logger.exception("Guard: store failure while evaluating %s %s", method, path)
            return GuardDecision.deny(StoreError(original_error=exc))

    def _evaluate_subject(
        self, principal: Principal, presented_token: str | None, resource: str, action: str
    ) -> GuardDecision:
        record = self.store.get_subject_record(principal)
        if record is None or not record.is_active:
            logger.info("Guard: %s %d missing or deleted", principal.subject_type.value, principal.subject_id)
            return GuardDecision.deny(AuthorizationError())

        if isinstance(record, Client):
            if record.revoked:
                logger.info("Guard: client %d is revoked", principal.subject_id)
                return GuardDecision.deny(AuthorizationError("Client has been revoked"))
            if record.has_long_lived_token and not (
                presented_token and verify_long_lived_token(presented_token, record.access_token)
            ):
                logger.info("Guard: client %d presented a token other than its long-lived token", principal.subject_id)
                return GuardDecision.deny(AuthorizationError("Client must use its long-lived token"))

        rows = self.store.get_subject_permission_rows(principal)
        tree = build_subject_tree(rows, principal.subject_type)
        grants = flatten_grants(tree[0]) if tree else []
        if permits(grants, resource, action):
            return GuardDecision.allow()

        logger.debug("Guard: %s lacks %s:%s", principal.name, resource, action)
        return GuardDecision.deny(AuthorizationError())
