from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from web3 import Web3

from supplier_pay.config import settings
from supplier_pay.dependencies import get_client_ip, get_execution_gateway, get_state_store, read_json_object
from supplier_pay.services.execution_service import (
    ExecutionFailed,
    ExecutionGateway,
    ExecutionRejected,
    validate_execution_request,
)
from supplier_pay.services.payment_call_service import build_payment_calls
from supplier_pay.services.payment_intent_service import Catalog, PaymentIntentRejected, build_payment_intent
from supplier_pay.services.state_store import StateStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/api/pay', tags=['payments'])


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={'ok': False, 'error': error, **extra})


def _valid_plan(plan: object) -> bool:
    return isinstance(plan, dict) and isinstance(plan.get('orders') or [], list)


@router.post('/test')
async def preflight(
    request: Request,
    location_id: str | None = Query(default=None, alias='locationId'),
    store: StateStore = Depends(get_state_store),
):
    body = await read_json_object(request)
    plan_input = body.get('input')
    if plan_input is None and location_id:
        plan_input = store.get(location_id)
    plan = body.get('plan')
    if not isinstance(plan_input, dict) or not _valid_plan(plan):
        return JSONResponse(status_code=400, content={'error': 'Invalid request: expected { input, plan }'})

    try:
        intent = build_payment_intent(plan_input, plan, body.get('pendingWindowMinutes'))
    except PaymentIntentRejected as exc:
        return JSONResponse(status_code=400, content=exc.to_dict())
    except (AttributeError, TypeError) as exc:
        logger.exception('Preflight failed on malformed plan or catalog')
        return JSONResponse(status_code=500, content={'error': 'Preflight failed', 'detail': str(exc)})
    return intent.to_dict()


@router.post('/calls')
async def payment_calls(
    request: Request,
    location_id: str = Query(default='', alias='locationId'),
    store: StateStore = Depends(get_state_store),
):
    if not location_id.strip():
        return _error(400, 'Missing locationId in query string')
    if not settings.treasury_hub_address:
        return _error(500, 'Missing TREASURY_HUB_ADDRESS in env')

    body = await read_json_object(request)
    owner_address = body.get('ownerAddress')
    if not isinstance(owner_address, str) or not Web3.is_checksum_address(owner_address):
        return _error(400, 'Invalid ownerAddress')
    plan = body.get('plan')
    if not _valid_plan(plan):
        return _error(400, 'Invalid plan')

    plan_input = store.get(location_id)
    if plan_input is None:
        return _error(404, f'Unknown locationId: {location_id}')

    try:
        intent = build_payment_intent(plan_input, plan, body.get('pendingWindowMinutes'))
    except PaymentIntentRejected as exc:
        return JSONResponse(status_code=400, content={'ok': False, **exc.to_dict()})

    try:
        bundle = build_payment_calls(
            intent,
            Catalog.from_plan_input(plan_input),
            owner_address=owner_address,
            location_id=location_id,
            hub_address=settings.treasury_hub_address,
            decimals=settings.token_decimals,
        )
    except ValueError as exc:
        return _error(500, 'Failed to build execution calls', detail=str(exc))

    return {
        'ok': True,
        'paymentIntent': intent.to_dict(),
        'hub': Web3.to_checksum_address(settings.treasury_hub_address),
        'ref': bundle.ref,
        'restaurantId': bundle.restaurant_id,
        'calls': [call.to_dict() for call in bundle.calls],
    }


@router.post('/execute')
async def execute_payment(
    request: Request,
    gateway: ExecutionGateway = Depends(get_execution_gateway),
):
    body = await read_json_object(request)
    try:
        execution_request = validate_execution_request(
            env=body.get('env'),
            owner_address=body.get('ownerAddress'),
            supplier_address=body.get('supplierAddress'),
            amount=body.get('amount'),
            ref=body.get('ref'),
            restaurant_id=body.get('restaurantId'),
            location_id=body.get('locationId'),
        )
    except ExecutionRejected as exc:
        return _error(400, str(exc))

    logger.info(
        'Executing payment of %s to %s for owner %s (client %s)',
        execution_request.amount,
        execution_request.supplier_address,
        execution_request.owner_address,
        get_client_ip(request),
    )
    try:
        result = await run_in_threadpool(gateway.execute, execution_request)
    except ExecutionFailed as exc:
        return _error(500, exc.message)
    return result.to_dict()
