"""Operation-level authorization for bulk farmer onboarding."""
from __future__ import annotations

import logging

from farmers_service.exceptions import AuthorizationError, AuthorizationUnavailableError
from farmers_service.services.collaborators import PermissionChecker

logger = logging.getLogger(__name__)

BULK_RESOURCE = "farmer"
BULK_ACTION = "bulk_create"


class AuthorizationGate:
    """One permission check per operation; records are never checked individually."""

    def __init__(self, checker: PermissionChecker):
        self._checker = checker

    def authorize(self, subject: str, fpo_org_id: str, org_id: str) -> None:
        try:
            allowed = self._checker.check_permission(subject, BULK_RESOURCE, BULK_ACTION, fpo_org_id, org_id)
        except Exception as exc:
            logger.error("Authorization check failed for %s on %s: %s", subject, fpo_org_id, exc)
            raise AuthorizationUnavailableError(
                "authorization service unavailable",
                context={"subject": subject, "fpo_org_id": fpo_org_id},
            ) from exc
        if not allowed:
            logger.info("Bulk create denied for %s on %s", subject, fpo_org_id)
            raise AuthorizationError(
                f"{subject} is not allowed to bulk create farmers for {fpo_org_id}",
                context={"subject": subject, "fpo_org_id": fpo_org_id},
            )
