"""
Server Action Routes
"""
import logging

from fastapi import APIRouter, Depends, Query

from api.middleware.authentication import get_current_user_id, require_admin
from api.schemas.orders import DirectActionBody, ProcessActionBody, ServerActionRequestBody
from api.utils.errors import raise_for_service_error
from api.utils.responses import success_response
from services.container import ServiceContainer, get_services
from services.server_actions import ActionQueueError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/server-actions", response_model=dict)
async def submit_action_request(
    request: ServerActionRequestBody,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
):
    try:
        created = await services.server_actions.submit_request(request.order_id, user_id, request.action, request.payload)
    except ActionQueueError as e:
        raise_for_service_error(e)
    return success_response(
        {'request_id': created.id, 'request': created.to_dict()},
        "Action request submitted successfully. An admin will review it shortly.",
    )


@router.get("/server-actions/status", response_model=dict)
async def action_request_status(
    order_id: str = Query(...),
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
):
    try:
        pending = await services.server_actions.get_status(order_id, user_id)
    except ActionQueueError as e:
        raise_for_service_error(e)
    return success_response({'pending_request': pending.to_dict() if pending else None})


@router.post("/orders/{order_id}/actions", response_model=dict)
async def direct_server_action(
    order_id: str,
    request: DirectActionBody,
    user_id: str = Depends(get_current_user_id),
    services: ServiceContainer = Depends(get_services),
):
    try:
        result = await services.server_actions.perform_direct_action(order_id, user_id, request.action, request.payload)
    except ActionQueueError as e:
        raise_for_service_error(e)
    return success_response(result)


@router.get("/admin/server-actions", response_model=dict)
async def list_pending_action_requests(
    _: str = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    pending = await services.server_actions.list_pending()
    return success_response({'requests': [r.to_dict() for r in pending], 'total': len(pending)})


@router.post("/admin/server-actions/{request_id}/process", response_model=dict)
async def process_action_request(
    request_id: str,
    request: ProcessActionBody,
    _: str = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    try:
        processed = await services.server_actions.process_request(request_id, request.decision, request.admin_notes)
    except ActionQueueError as e:
        raise_for_service_error(e)
    return success_response(processed.to_dict(), f"Request {processed.status.value} successfully")
