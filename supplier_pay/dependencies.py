from fastapi import HTTPException, Request

from supplier_pay.services.execution_service import ExecutionGateway
from supplier_pay.services.state_store import StateStore


def get_state_store(request: Request) -> StateStore:
    return request.app.state.state_store


def get_execution_gateway(request: Request) -> ExecutionGateway:
    return request.app.state.execution_gateway


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


async def read_json_object(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Request body must be valid JSON') from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail='Request body must be a JSON object')
    return body
