import logging

from fastapi import FastAPI

from supplier_pay.config import settings
from supplier_pay.routers import payments, state
from supplier_pay.security.headers import install_security_headers
from supplier_pay.services.execution_service import ExecutionGateway
from supplier_pay.services.state_store import build_state_store

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = FastAPI(title='Supplier Payments')

app.state.state_store = build_state_store(settings)
app.state.execution_gateway = ExecutionGateway.from_settings(settings)

install_security_headers(app)

app.include_router(payments.router)
app.include_router(state.router)


@app.get('/healthz')
def healthz() -> dict:
    return {'ok': True}
