"""Tests for the HTTP collaborator clients and the authorization gate."""
from unittest.mock import Mock, patch

import pytest
import requests

from farmers_service.exceptions import (
    AuthorizationError,
    AuthorizationUnavailableError,
    FarmerCreationError,
    PermanentFarmerError,
    TransientFarmerError,
)
from farmers_service.services.authorization import AuthorizationGate
from farmers_service.services.collaborators import AAAClient, FarmerServiceClient, post_webhook
from farmers_service.services.farmer_validator import FarmerRecord

from tests.fakes import FakePermissionChecker

RECORD = FarmerRecord(
    index=0,
    first_name="Ravi",
    last_name="Kumar",
    phone_number="9876543210",
    external_id="EXT-1",
    city="Pune",
)


def _response(status_code=200, body=None):
    response = Mock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


class TestFarmerServiceClient:
    @patch("farmers_service.services.collaborators.requests.post")
    def test_create_farmer_returns_id(self, mock_post):
        mock_post.return_value = _response(201, {"success": True, "data": {"id": "F-42"}})
        client = FarmerServiceClient("http://farmers/", token="secret", timeout=3)

        assert client.create_farmer(RECORD, fpo_org_id="fpo-1", requested_by="user-1") == "F-42"

        url = mock_post.call_args.args[0]
        kwargs = mock_post.call_args.kwargs
        assert url == "http://farmers/api/v1/farmers"
        assert kwargs["json"]["aaa_org_id"] == "fpo-1"
        assert kwargs["json"]["city"] == "Pune"
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["headers"]["Idempotency-Key"] == "EXT-1"
        assert kwargs["timeout"] == 3

    @patch("farmers_service.services.collaborators.requests.post")
    def test_top_level_farmer_id(self, mock_post):
        mock_post.return_value = _response(200, {"farmer_id": 17})
        assert FarmerServiceClient("http://farmers").create_farmer(
            RECORD, fpo_org_id="fpo-1", requested_by="user-1"
        ) == "17"

    @pytest.mark.parametrize("status_code", [408, 429, 500, 503])
    @patch("farmers_service.services.collaborators.requests.post")
    def test_retryable_statuses_are_transient(self, mock_post, status_code):
        mock_post.return_value = _response(status_code)
        with pytest.raises(TransientFarmerError) as exc_info:
            FarmerServiceClient("http://farmers").create_farmer(RECORD, fpo_org_id="f", requested_by="u")
        assert exc_info.value.status_code == status_code

    @patch("farmers_service.services.collaborators.requests.post")
    def test_client_errors_are_permanent(self, mock_post):
        mock_post.return_value = _response(409, {"message": "farmer already exists"})
        with pytest.raises(PermanentFarmerError) as exc_info:
            FarmerServiceClient("http://farmers").create_farmer(RECORD, fpo_org_id="f", requested_by="u")
        assert "farmer already exists" in str(exc_info.value)

    @patch("farmers_service.services.collaborators.requests.post")
    def test_missing_id_is_permanent(self, mock_post):
        mock_post.return_value = _response(200, {"success": True})
        with pytest.raises(PermanentFarmerError):
            FarmerServiceClient("http://farmers").create_farmer(RECORD, fpo_org_id="f", requested_by="u")

    @pytest.mark.parametrize("error", [requests.Timeout("slow"), requests.ConnectionError("refused")])
    @patch("farmers_service.services.collaborators.requests.post")
    def test_network_errors_are_transient(self, mock_post, error):
        mock_post.side_effect = error
        with pytest.raises(TransientFarmerError):
            FarmerServiceClient("http://farmers").create_farmer(RECORD, fpo_org_id="f", requested_by="u")

    @patch("farmers_service.services.collaborators.requests.post")
    def test_other_request_errors_are_unclassified(self, mock_post):
        mock_post.side_effect = requests.TooManyRedirects("loop")
        with pytest.raises(FarmerCreationError) as exc_info:
            FarmerServiceClient("http://farmers").create_farmer(RECORD, fpo_org_id="f", requested_by="u")
        assert not isinstance(exc_info.value, (TransientFarmerError, PermanentFarmerError))


class TestAAAClient:
    @patch("farmers_service.services.collaborators.requests.post")
    def test_check_permission(self, mock_post):
        mock_post.return_value = _response(200, {"allowed": True})
        client = AAAClient("http://aaa")

        assert client.check_permission("user-1", "farmer", "bulk_create", "", "org-1") is True
        payload = mock_post.call_args.kwargs["json"]
        assert payload["resource_id"] == "*"
        assert payload["org_id"] == "org-1"

    @patch("farmers_service.services.collaborators.requests.post")
    def test_malformed_response_raises(self, mock_post):
        mock_post.return_value = _response(200, {"decision": "yes"})
        with pytest.raises(RuntimeError):
            AAAClient("http://aaa").check_permission("u", "farmer", "bulk_create", "fpo", "org")


class TestAuthorizationGate:
    def test_allowed(self):
        checker = FakePermissionChecker(allowed=True)
        AuthorizationGate(checker).authorize("user-1", "fpo-1", "org-1")
        assert checker.calls == [("user-1", "farmer", "bulk_create", "fpo-1", "org-1")]

    def test_denied(self):
        with pytest.raises(AuthorizationError):
            AuthorizationGate(FakePermissionChecker(allowed=False)).authorize("user-1", "fpo-1", "org-1")

    def test_unavailable(self):
        checker = FakePermissionChecker(error=requests.ConnectionError("down"))
        with pytest.raises(AuthorizationUnavailableError) as exc_info:
            AuthorizationGate(checker).authorize("user-1", "fpo-1", "org-1")
        assert isinstance(exc_info.value.__cause__, requests.ConnectionError)


@patch("farmers_service.services.collaborators.requests.post")
def test_post_webhook_never_raises(mock_post):
    mock_post.return_value = _response(200, {})
    assert post_webhook("http://hook", {"status": "COMPLETED"}) is True

    mock_post.return_value = _response(500)
    assert post_webhook("http://hook", {"status": "COMPLETED"}) is False

    mock_post.side_effect = requests.ConnectionError("down")
    assert post_webhook("http://hook", {"status": "COMPLETED"}) is False
