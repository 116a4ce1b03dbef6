"""HTTP clients for the collaborators the bulk pipeline depends on."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import requests

from farmers_service.exceptions import FarmerCreationError, PermanentFarmerError, TransientFarmerError
from farmers_service.services.farmer_validator import FarmerRecord
from farmers_service.utils.bulk_settings import CollaboratorSettings, get_collaborator_settings

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class PermissionChecker(Protocol):
    def check_permission(self, subject: str, resource: str, action: str, object_id: str, org_id: str) -> bool:
        ...


class FarmerCreator(Protocol):
    def create_farmer(self, record: FarmerRecord, *, fpo_org_id: str, requested_by: str) -> str:
        ...


def _auth_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class AAAClient:
    """Permission checks against the AAA (authentication/authorization) service."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Optional[CollaboratorSettings] = None) -> "AAAClient":
        settings = settings or get_collaborator_settings()
        return cls(settings.aaa_base_url, settings.aaa_token, settings.timeout_seconds)

    def check_permission(self, subject: str, resource: str, action: str, object_id: str, org_id: str) -> bool:
        payload = {
            "principal_id": subject,
            "resource_type": resource,
            # list-style checks without an object use the wildcard
            "resource_id": object_id or "*",
            "action": action,
            "org_id": org_id,
        }
        response = requests.post(
            f"{self.base_url}/api/v1/authz/check",
            json=payload,
            headers=_auth_headers(self.token),
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        allowed = data.get("allowed") if isinstance(data, dict) else None
        if not isinstance(allowed, bool):
            raise RuntimeError("Unexpected AAA permission response structure")
        return allowed


class FarmerServiceClient:
    """Single-record farmer creation; classifies failures as transient or permanent."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Optional[CollaboratorSettings] = None) -> "FarmerServiceClient":
        settings = settings or get_collaborator_settings()
        return cls(settings.farmer_base_url, settings.farmer_token, settings.timeout_seconds)

    def create_farmer(self, record: FarmerRecord, *, fpo_org_id: str, requested_by: str) -> str:
        payload = record.to_payload()
        payload["aaa_org_id"] = fpo_org_id
        payload["requested_by"] = requested_by
        headers = _auth_headers(self.token)
        # a retry after a timed-out attempt repeats the same key
        headers["Idempotency-Key"] = record.external_id
        try:
            response = requests.post(
                f"{self.base_url}/api/v1/farmers",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientFarmerError(f"farmer service unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise FarmerCreationError(f"farmer service request failed: {exc}") from exc

        if response.status_code in _RETRYABLE_STATUS_CODES:
            raise TransientFarmerError(
                f"farmer service returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise PermanentFarmerError(
                _error_message(response), status_code=response.status_code
            )

        farmer_id = _extract_id(response)
        if not farmer_id:
            raise PermanentFarmerError(
                "farmer service response did not include a farmer id", status_code=response.status_code
            )
        return farmer_id


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("detail")
        if message:
            return f"farmer service rejected record ({response.status_code}): {message}"
    return f"farmer service rejected record ({response.status_code})"


def _extract_id(response: requests.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    data = body.get("data") if isinstance(body.get("data"), dict) else body
    value = data.get("id") or data.get("farmer_id")
    return str(value) if value else None


def post_webhook(url: str, payload: Dict[str, Any], timeout: float = 10.0) -> bool:
    """Deliver a completion notification; delivery problems are logged, never raised."""
    try:
        response = requests.post(url, json=payload, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Webhook delivery to %s failed: %s", url, exc)
        return False
    return True
