"""
Bulk farmer onboarding API endpoints.

Starts bulk operations from JSON or multipart uploads, and exposes status,
outcomes, cancellation, retry, result export, validation and templates.
Operation-level errors from the service are mapped onto HTTP status codes
here; per-record failures only ever appear in outcomes.
"""
import uuid
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from starlette.responses import JSONResponse, Response

from farmers_service.api.deps import get_bulk_farmer_service, get_requester
from farmers_service.db import schemas
from farmers_service.exceptions import (
    AuthorizationError,
    AuthorizationUnavailableError,
    BulkOperationError,
    FormatError,
    InvalidRetrySelectionError,
    OperationAlreadyCompleteError,
    OperationNotFoundError,
    OperationNotRetryableError,
    SyncLimitExceededError,
    UnsupportedFormatError,
)
from farmers_service.services.bulk_farmer_service import BulkFarmerService, Requester
from farmers_service.services.farmer_parser import decode_base64_payload

router = APIRouter(prefix="/bulk", tags=["bulk-farmers"])

_STATUS_BY_ERROR = (
    (FormatError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnsupportedFormatError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (SyncLimitExceededError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidRetrySelectionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (AuthorizationUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (OperationNotFoundError, status.HTTP_404_NOT_FOUND),
    (OperationAlreadyCompleteError, status.HTTP_409_CONFLICT),
    (OperationNotRetryableError, status.HTTP_409_CONFLICT),
)

_EXTENSION_FORMATS = {"csv": "csv", "txt": "csv", "tsv": "csv", "xlsx": "excel", "json": "json"}


def _http_error(exc: BulkOperationError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_dict())


def _descriptor_response(descriptor: schemas.OperationDescriptor) -> JSONResponse:
    # terminal results come back as 200, accepted background work as 202
    accepted = descriptor.operation.processing_mode != "sync"
    return JSONResponse(
        content=jsonable_encoder(descriptor),
        status_code=status.HTTP_202_ACCEPTED if accepted else status.HTTP_200_OK,
    )


@router.post("/farmers")
async def add_farmers(
    payload: schemas.BulkFarmerRequest,
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        data = decode_base64_payload(payload.data) if payload.data is not None else None
        if payload.options.validate_only:
            report = await service.validate_only(
                input_format=payload.input_format, data=data, farmers=payload.farmers
            )
            return JSONResponse(content=jsonable_encoder(report))
        descriptor = await service.start_operation(
            fpo_org_id=payload.fpo_org_id,
            input_format=payload.input_format,
            processing_mode=payload.processing_mode,
            requester=requester,
            data=data,
            farmers=payload.farmers,
            options=payload.options,
        )
    except BulkOperationError as exc:
        raise _http_error(exc) from exc
    return _descriptor_response(descriptor)


@router.post("/farmers/upload")
async def upload_farmers(
    file: UploadFile = File(...),
    fpo_org_id: str = Form(...),
    input_format: Optional[str] = Form(default=None),
    processing_mode: str = Form(default="async"),
    options: Optional[str] = Form(default=None),
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        parsed_options = (
            schemas.BulkProcessingOptions.model_validate_json(options)
            if options else schemas.BulkProcessingOptions()
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=jsonable_encoder(exc.errors())) from exc

    if not input_format:
        extension = (file.filename or "").rsplit(".", 1)[-1].lower()
        input_format = _EXTENSION_FORMATS.get(extension)
        if input_format is None:
            raise HTTPException(status_code=422, detail="input_format is required for this file type")

    content = await file.read()
    try:
        if parsed_options.validate_only:
            report = await service.validate_only(input_format=input_format, data=content)
            return JSONResponse(content=jsonable_encoder(report))
        descriptor = await service.start_operation(
            fpo_org_id=fpo_org_id,
            input_format=input_format,
            processing_mode=processing_mode,
            requester=requester,
            data=content,
            options=parsed_options,
        )
    except BulkOperationError as exc:
        raise _http_error(exc) from exc
    return _descriptor_response(descriptor)


@router.get("/operations", response_model=List[schemas.BulkOperationStatus])
def list_operations(
    fpo_org_id: Optional[str] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    return service.list_operations(fpo_org_id=fpo_org_id, status=status_filter, skip=skip, limit=limit)


@router.get("/operations/{operation_id}", response_model=schemas.BulkOperationStatus)
def get_operation_status(
    operation_id: uuid.UUID,
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        return service.get_status(operation_id)
    except BulkOperationError as exc:
        raise _http_error(exc) from exc


@router.get("/operations/{operation_id}/outcomes", response_model=List[schemas.RecordOutcome])
def get_operation_outcomes(
    operation_id: uuid.UUID,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        return service.get_outcomes(operation_id, status=status_filter.upper() if status_filter else None)
    except BulkOperationError as exc:
        raise _http_error(exc) from exc


@router.post("/operations/{operation_id}/cancel", response_model=schemas.BulkOperationStatus)
def cancel_operation(
    operation_id: uuid.UUID,
    payload: Optional[schemas.CancelBulkRequest] = Body(default=None),
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        return service.cancel(operation_id, requester, reason=payload.reason if payload else None)
    except BulkOperationError as exc:
        raise _http_error(exc) from exc


@router.post("/operations/{operation_id}/retry")
async def retry_operation(
    operation_id: uuid.UUID,
    payload: schemas.RetryBulkRequest,
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        descriptor = await service.retry_failed_records(operation_id, payload, requester)
    except BulkOperationError as exc:
        raise _http_error(exc) from exc
    return _descriptor_response(descriptor)


@router.get("/operations/{operation_id}/results")
def export_operation_results(
    operation_id: uuid.UUID,
    format: str = Query(default="csv"),
    include_all: bool = Query(default=False),
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        exported = service.export_results(operation_id, format, include_all)
    except BulkOperationError as exc:
        raise _http_error(exc) from exc
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )


@router.post("/validate", response_model=schemas.ValidationReport)
async def validate_farmers(
    payload: schemas.ValidateBulkRequest,
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        data = decode_base64_payload(payload.data) if payload.data is not None else None
        return await service.validate_only(input_format=payload.input_format, data=data, farmers=payload.farmers)
    except BulkOperationError as exc:
        raise _http_error(exc) from exc


@router.get("/template", response_model=schemas.BulkTemplate)
def get_upload_template(
    format: str = Query(default="csv"),
    include_example: bool = Query(default=True),
    service: BulkFarmerService = Depends(get_bulk_farmer_service),
    requester: Requester = Depends(get_requester),
):
    try:
        return service.get_template(format, include_example)
    except BulkOperationError as exc:
        raise _http_error(exc) from exc
