from __future__ import annotations

import copy
from collections.abc import Callable
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from supplier_pay.config import Settings
from supplier_pay.models import LocationState
from supplier_pay.services.demo_state import DEMO_LOCATION_ID, demo_state


class StateStore(Protocol):
    def get(self, location_id: str) -> dict | None: ...

    def set(self, location_id: str, state: dict) -> None: ...


class InMemoryStateStore:
    def __init__(self, initial: dict[str, dict] | None = None) -> None:
        self._states: dict[str, dict] = {}
        for location_id, state in (initial or {}).items():
            self.set(location_id, state)

    def get(self, location_id: str) -> dict | None:
        state = self._states.get(location_id)
        return copy.deepcopy(state) if state is not None else None

    def set(self, location_id: str, state: dict) -> None:
        self._states[location_id] = copy.deepcopy(state)


class DatabaseStateStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def get(self, location_id: str) -> dict | None:
        with self.session_factory() as db:
            row = db.execute(
                select(LocationState).where(LocationState.location_id == location_id)
            ).scalar_one_or_none()
            return copy.deepcopy(row.state) if row else None

    def set(self, location_id: str, state: dict) -> None:
        with self.session_factory() as db:
            row = db.get(LocationState, location_id)
            if row is None:
                db.add(LocationState(location_id=location_id, state=copy.deepcopy(state)))
            else:
                row.state = copy.deepcopy(state)
            db.commit()


def build_state_store(config: Settings) -> StateStore:
    backend = config.state_store_backend.strip().lower()
    if backend == 'database':
        from supplier_pay.db import SessionLocal

        return DatabaseStateStore(SessionLocal)
    return InMemoryStateStore({DEMO_LOCATION_ID: demo_state()})
