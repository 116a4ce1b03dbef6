import base64
import csv
import io
import json
import uuid

import pytest
from fastapi.testclient import TestClient

from farmers_service.api.deps import get_bulk_farmer_service
from farmers_service.api.main import app

from tests.fakes import FakePermissionChecker, make_farmer


def auth(user="user-1", org="org-1"):
    return {"x-auth-request-user": user, "x-org-id": org}


@pytest.fixture
def client(service):
    app.dependency_overrides[get_bulk_farmer_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _start_sync(client, farmers):
    payload = {"fpo_org_id": "fpo-1", "input_format": "json", "processing_mode": "sync", "farmers": farmers}
    r = client.post("/bulk/farmers", json=payload, headers=auth())
    assert r.status_code == 200, r.text
    return r.json()


def test_requires_identity(client):
    r = client.get("/bulk/operations")
    assert r.status_code == 401
    assert r.json()["detail"] == "Authentication required"


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_sync_bulk_create_and_status(client):
    farmers = [make_farmer(i) for i in range(3)]
    farmers[1]["phone_number"] = "123"

    body = _start_sync(client, farmers)
    assert body["status"] == "COMPLETED"
    assert body["operation"]["progress"]["successful"] == 2
    assert [o["record_index"] for o in body["outcomes"]] == [0, 1, 2]

    operation_id = body["operation_id"]
    r = client.get(f"/bulk/operations/{operation_id}", headers=auth())
    assert r.status_code == 200, r.text
    assert r.json()["progress"]["failed"] == 1
    assert r.json()["can_retry"] is True

    r = client.get(f"/bulk/operations/{operation_id}/outcomes", params={"status": "failed"}, headers=auth())
    assert r.status_code == 200, r.text
    assert [o["record_index"] for o in r.json()] == [1]

    r = client.get("/bulk/operations", params={"fpo_org_id": "fpo-1"}, headers=auth())
    assert [op["id"] for op in r.json()] == [operation_id]


def test_base64_csv_payload(client):
    content = b"first_name,last_name,phone_number\nRavi,Kumar,9876543210\n"
    payload = {
        "fpo_org_id": "fpo-1",
        "input_format": "csv",
        "processing_mode": "sync",
        "data": base64.b64encode(content).decode(),
    }
    r = client.post("/bulk/farmers", json=payload, headers=auth())
    assert r.status_code == 200, r.text
    assert r.json()["operation"]["progress"]["successful"] == 1


def test_invalid_base64_creates_no_operation(client):
    payload = {"fpo_org_id": "fpo-1", "input_format": "csv", "processing_mode": "sync", "data": "***"}
    r = client.post("/bulk/farmers", json=payload, headers=auth())
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "format_error"
    assert client.get("/bulk/operations", headers=auth()).json() == []


def test_request_requires_payload(client):
    r = client.post("/bulk/farmers", json={"fpo_org_id": "fpo-1"}, headers=auth())
    assert r.status_code == 422


def test_upload_infers_format_from_extension(client):
    content = b"first_name,last_name,phone_number\nRavi,Kumar,9876543210\nAsha,Patil,9876543211\n"
    r = client.post(
        "/bulk/farmers/upload",
        files={"file": ("farmers.csv", content, "text/csv")},
        data={"fpo_org_id": "fpo-1", "processing_mode": "sync"},
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["operation"]["input_format"] == "csv"
    assert r.json()["operation"]["progress"]["total"] == 2


def test_upload_validate_only(client):
    content = json.dumps([make_farmer(0), make_farmer(1, email="nope")]).encode()
    r = client.post(
        "/bulk/farmers/upload",
        files={"file": ("farmers.json", content, "application/json")},
        data={"fpo_org_id": "fpo-1", "options": json.dumps({"validate_only": True})},
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    report = r.json()
    assert report["invalid_records"] == 1
    assert report["errors"]["1"][0]["code"] == "invalid_email"


def test_upload_unknown_extension(client):
    r = client.post(
        "/bulk/farmers/upload",
        files={"file": ("farmers.pdf", b"%PDF", "application/pdf")},
        data={"fpo_org_id": "fpo-1"},
        headers=auth(),
    )
    assert r.status_code == 422


def test_authorization_denied_is_403(make_service):
    service = make_service(permission_checker=FakePermissionChecker(allowed=False))
    app.dependency_overrides[get_bulk_farmer_service] = lambda: service
    try:
        client = TestClient(app)
        payload = {"fpo_org_id": "fpo-1", "processing_mode": "sync", "farmers": [make_farmer(0)]}
        r = client.post("/bulk/farmers", json=payload, headers=auth())
        assert r.status_code == 403
        assert r.json()["detail"]["code"] == "forbidden"

        operations = client.get("/bulk/operations", headers=auth()).json()
        assert operations[0]["status"] == "FAILED"
        assert operations[0]["error_kind"] == "authorization"
    finally:
        app.dependency_overrides.clear()


def test_sync_limit_is_422(client):
    farmers = [make_farmer(i) for i in range(101)]
    payload = {"fpo_org_id": "fpo-1", "processing_mode": "sync", "farmers": farmers}
    r = client.post("/bulk/farmers", json=payload, headers=auth())
    assert r.status_code == 422
    assert r.json()["detail"]["code"] == "sync_limit_exceeded"


def test_unknown_operation_is_404(client):
    r = client.get(f"/bulk/operations/{uuid.uuid4()}", headers=auth())
    assert r.status_code == 404


def test_cancel_completed_operation_is_409(client):
    body = _start_sync(client, [make_farmer(0)])
    r = client.post(f"/bulk/operations/{body['operation_id']}/cancel", json={"reason": "late"}, headers=auth())
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "already_complete"


def test_retry_flow(client):
    farmers = [make_farmer(0), make_farmer(1, gender="robot")]
    body = _start_sync(client, farmers)
    operation_id = body["operation_id"]

    r = client.post(
        f"/bulk/operations/{operation_id}/retry", json={"record_indices": [0]}, headers=auth()
    )
    assert r.status_code == 422
    assert r.json()["detail"]["context"]["invalid_indices"] == [0]

    r = client.post(
        f"/bulk/operations/{operation_id}/retry",
        json={"retry_all": True, "processing_mode": "sync"},
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["operation"]["parent_operation_id"] == operation_id

    r = client.post(f"/bulk/operations/{operation_id}/retry", json={}, headers=auth())
    assert r.status_code == 422


def test_results_download(client):
    farmers = [make_farmer(0), make_farmer(1, postal_code="12")]
    body = _start_sync(client, farmers)

    r = client.get(f"/bulk/operations/{body['operation_id']}/results", headers=auth())
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert f"bulk_operation_{body['operation_id']}_results.csv" in r.headers["content-disposition"]
    rows = list(csv.DictReader(io.StringIO(r.text)))
    assert [row["record_index"] for row in rows] == ["1"]
    assert rows[0]["error_kind"] == "validation"

    r = client.get(
        f"/bulk/operations/{body['operation_id']}/results",
        params={"format": "json", "include_all": True},
        headers=auth(),
    )
    assert len(r.json()) == 2


def test_validate_endpoint(client):
    payload = {"fpo_org_id": "fpo-1", "farmers": [make_farmer(0), make_farmer(1, first_name="")]}
    r = client.post("/bulk/validate", json=payload, headers=auth())
    assert r.status_code == 200, r.text
    assert r.json()["is_valid"] is False
    assert client.get("/bulk/operations", headers=auth()).json() == []


def test_template_endpoint(client):
    r = client.get("/bulk/template", params={"format": "json"}, headers=auth())
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["file_name"] == "farmer_upload_template.json"
    sample = json.loads(base64.b64decode(body["content"]))
    assert sample[0]["phone_number"] == "9876543210"

    r = client.get("/bulk/template", params={"format": "xml"}, headers=auth())
    assert r.status_code == 422
