from fastapi import FastAPI, Request
from starlette.responses import Response


NO_STORE = "no-store"


def install_security_headers(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        # Payment previews and receipts must never be served from a cache.
        response.headers["Cache-Control"] = NO_STORE
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response
