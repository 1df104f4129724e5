"""
Provisioning Administration, Recovery and Reconciliation Routes
"""
import logging
from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.middleware.authentication import require_admin, require_admin_or_cron
from api.schemas.orders import BatchRunRequest, LifecycleRequest
from api.utils.errors import ConflictError, ResourceNotFoundError, raise_for_service_error
from api.utils.responses import success_response
from models.order_models import InvalidTransitionError
from services.container import ServiceContainer, get_services
from services.provisioning_orchestrator import ProvisioningError
from services.renewal_processor import RenewalError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/admin/provisioning/batch", response_model=dict)
async def run_batch_provisioning(
    request: Optional[BatchRunRequest] = None,
    caller: str = Depends(require_admin_or_cron),
    services: ServiceContainer = Depends(get_services),
):
    """Run one retry sweep; safe to call repeatedly"""
    config = services.batch_config()
    if request is not None:
        overrides = {k: v for k, v in (('batch_size', request.batch_size), ('max_retries', request.max_retries)) if v}
        if overrides:
            config = replace(config, **overrides)
    logger.info(f"🤖 Batch provisioning triggered by {caller}")
    summary = await services.batch_provisioner.run(config)
    return success_response(summary)


@router.get("/admin/provisioning/stats", response_model=dict)
async def provisioning_stats(
    _: str = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    stats = await services.orchestrator.get_stats()
    stats['last_batch'] = services.batch_provisioner.last_summary
    stats['dispatcher_in_flight'] = services.dispatcher.in_flight
    stats['renewals'] = services.renewal_engine.get_stats()
    stats['webhooks'] = services.webhook_handler.get_stats()
    return success_response(stats)


@router.post("/admin/orders/{order_id}/provision", response_model=dict)
async def provision_order(
    order_id: str,
    _: str = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """Re-run provisioning for one order, resetting a failed attempt"""
    result = await services.orchestrator.provision_order(order_id, reset_failed=True)
    if result['status'] == 'not_found':
        raise ResourceNotFoundError("Order", order_id)
    return success_response(result)


@router.post("/admin/orders/{order_id}/suspend", response_model=dict)
async def suspend_order(
    order_id: str,
    request: Optional[LifecycleRequest] = None,
    _: str = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    return await _lifecycle(services.orchestrator.suspend_order, order_id, request)


@router.post("/admin/orders/{order_id}/terminate", response_model=dict)
async def terminate_order(
    order_id: str,
    request: Optional[LifecycleRequest] = None,
    _: str = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    return await _lifecycle(services.orchestrator.terminate_order, order_id, request)


async def _lifecycle(action, order_id: str, request: Optional[LifecycleRequest]):
    try:
        result = await action(order_id, request.reason if request else None)
    except ProvisioningError:
        raise ResourceNotFoundError("Order", order_id)
    except InvalidTransitionError as e:
        raise ConflictError(str(e))
    return success_response(result)


@router.get("/admin/renewals/recovery", response_model=dict)
async def list_pending_renewals(
    _: str = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    return success_response(await services.recovery.list_pending_renewals())


@router.post("/admin/renewals/recovery", response_model=dict)
async def process_renewal_recovery(
    order_id: Optional[str] = Query(None, description="Recover a single order only"),
    _: str = Depends(require_admin_or_cron),
    services: ServiceContainer = Depends(get_services),
):
    try:
        result = await services.recovery.process_recovery(order_id)
    except RenewalError as e:
        raise_for_service_error(e)
    return success_response(result)


@router.delete("/admin/renewals/recovery", response_model=dict)
async def clear_stale_renewals(
    older_than_minutes: Optional[int] = Query(None, ge=1),
    _: str = Depends(require_admin_or_cron),
    services: ServiceContainer = Depends(get_services),
):
    return success_response(await services.recovery.clear_stale(older_than_minutes))


@router.post("/admin/status-sync", response_model=dict)
async def run_status_sync(
    limit: Optional[int] = Query(None, ge=1, le=100),
    _: str = Depends(require_admin_or_cron),
    services: ServiceContainer = Depends(get_services),
):
    return success_response(await services.status_sync.run(limit))


@router.delete("/admin/orders/abandoned", response_model=dict)
async def purge_abandoned_orders(
    older_than_days: Optional[int] = Query(None, ge=1),
    _: str = Depends(require_admin_or_cron),
    services: ServiceContainer = Depends(get_services),
):
    return success_response(await services.recovery.purge_abandoned_orders(older_than_days))
