import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jojopay.config import get_settings
from jojopay.database import Base, engine
from jojopay.errors import PaymentError
from jojopay.logs import configure_logging
from jojopay.routes import router
from jojopay.webhooks import router as webhook_router

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="JojoPrompts Payment Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "x-client-info", "apikey", "hashstring"],
)

app.include_router(router)
app.include_router(webhook_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    log = logger.warning if exc.status_code < 500 else logger.error
    log("payment_error", path=request.url.path, error=exc.message, details=exc.details,
        kind=type(exc).__name__, status=exc.status_code)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.get("/health")
def health():
    return {"ok": True}
