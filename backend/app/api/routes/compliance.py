"""
Compliance API Routes

Expiration status for dated records. Certificates, inspections and the
other record kinds are stored by their own features; callers send the
dates and get the derived status back.
"""

import logging
from datetime import date
from typing import Optional, Union

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from app.api.dependencies import AccessGrantedCompany
from app.config.settings import get_settings
from app.domain.dates import days_until, format_local
from app.domain.expiration import (
    QR_EXPIRING_THRESHOLD_DAYS,
    ExpirationNotice,
    ExpirationStatus,
    RecordKind,
    build_expiration_notice,
    classify_expiration,
    is_within_window,
    qr_document_expiration,
)


logger = logging.getLogger(__name__)

router = APIRouter()


class DatedRecordInput(BaseModel):
    id: str
    kind: RecordKind = RecordKind.CERTIFICATE
    expiration_date: Optional[Union[date, str]] = None


class EvaluateRequest(BaseModel):
    records: list[DatedRecordInput] = Field(..., max_length=500)
    threshold_days: Optional[int] = Field(default=None, ge=0)
    window_days: Optional[int] = Field(default=None, ge=0)
    today: Optional[date] = None


class RecordEvaluation(BaseModel):
    id: str
    kind: RecordKind
    status: ExpirationStatus
    days_until_expiration: Optional[int] = None
    within_notification_window: bool
    expiration_display: str
    notice: Optional[ExpirationNotice] = None


class EvaluateResponse(BaseModel):
    results: list[RecordEvaluation]
    counts: dict[ExpirationStatus, int]


class QrExpirationResponse(BaseModel):
    extracted_date: str
    expiration_date: Optional[date] = None
    status: ExpirationStatus
    days_until_expiration: Optional[int] = None
    expiration_display: str


@router.post("/compliance/evaluate", response_model=EvaluateResponse)
async def evaluate_records(request: EvaluateRequest, company: AccessGrantedCompany):
    """
    Classify a batch of dated records.

    Thresholds default to the configured values; ``today`` defaults to the
    server's local day.
    """
    settings = get_settings()
    threshold = request.threshold_days if request.threshold_days is not None else settings.expiring_threshold_days
    window = request.window_days if request.window_days is not None else settings.notification_window_days
    today = request.today or date.today()

    results = []
    counts = {status: 0 for status in ExpirationStatus}

    for record in request.records:
        status = classify_expiration(record.expiration_date, threshold, today=today)
        counts[status] += 1
        results.append(RecordEvaluation(
            id=record.id,
            kind=record.kind,
            status=status,
            days_until_expiration=days_until(record.expiration_date, today=today),
            within_notification_window=is_within_window(record.expiration_date, window, today=today),
            expiration_display=format_local(record.expiration_date, settings.display_locale),
            notice=build_expiration_notice(
                record.id,
                record.kind,
                record.expiration_date,
                window_days=window,
                urgency_threshold_days=settings.urgency_threshold_days,
                locale=settings.display_locale,
                today=today,
            ),
        ))

    logger.debug(f"Evaluated {len(results)} records for company {company.id}: {counts}")
    return EvaluateResponse(results=results, counts=counts)


@router.get("/compliance/qr-expiration", response_model=QrExpirationResponse)
async def get_qr_expiration(
    company: AccessGrantedCompany,
    extracted_date: str = Query(..., description="Inspection date printed on the QR document"),
):
    """QR documents expire a fixed number of years after their extracted date."""
    settings = get_settings()
    expires = qr_document_expiration(extracted_date, settings.qr_validity_years)

    return QrExpirationResponse(
        extracted_date=extracted_date,
        expiration_date=expires,
        status=classify_expiration(expires, QR_EXPIRING_THRESHOLD_DAYS),
        days_until_expiration=days_until(expires),
        expiration_display=format_local(expires, settings.display_locale),
    )
