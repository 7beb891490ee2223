"""
FastAPI router for notification checks.

Endpoints:
- POST /notifications/test    send a one-off message to a Teams channel

The dispatcher never raises; a failed delivery comes back as
{success: false, error, error_kind} with the DeliveryResult in data.
"""

import logging

from fastapi import APIRouter, Body

from qc_backend.core.dependencies import DispatcherDep
from qc_backend.models import ApiResponse, NotificationTestRequest


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/test", response_model=ApiResponse)
async def send_test_notification(
    dispatcher: DispatcherDep,
    request: NotificationTestRequest = Body(...),
) -> ApiResponse:
    result = await dispatcher.send_test(request.channel, request.message, request.recipients)
    return ApiResponse(
        success=result.delivered,
        data=result.model_dump(mode="json"),
        message=f"Test message {result.status.value}",
        error=result.error,
        error_kind=result.error_kind,
    )
