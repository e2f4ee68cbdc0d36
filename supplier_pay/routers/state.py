from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from supplier_pay.dependencies import get_state_store, read_json_object
from supplier_pay.services.state_store import StateStore

router = APIRouter(prefix='/api/state', tags=['state'])


def _require_location(location_id: str) -> str:
    location_id = location_id.strip()
    if not location_id:
        raise HTTPException(status_code=400, detail='Missing locationId in query string')
    return location_id


@router.get('')
def get_location_state(
    location_id: str = Query(default='', alias='locationId'),
    store: StateStore = Depends(get_state_store),
):
    location_id = _require_location(location_id)
    state = store.get(location_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f'Unknown locationId: {location_id}')
    return state


@router.put('')
async def put_location_state(
    request: Request,
    location_id: str = Query(default='', alias='locationId'),
    store: StateStore = Depends(get_state_store),
):
    location_id = _require_location(location_id)
    state = await read_json_object(request)
    for key in ('suppliers', 'skus'):
        if key in state and not isinstance(state[key], list):
            raise HTTPException(status_code=400, detail=f'{key} must be a list')
    store.set(location_id, state)
    return {'ok': True, 'locationId': location_id}
