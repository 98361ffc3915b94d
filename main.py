from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import loan_ledger.models  # ensure models are registered
from loan_ledger.core import config
from loan_ledger.core.exceptions import LedgerError
from loan_ledger.core.logging import setup_logging, get_logger
from loan_ledger.utils.database import engine, Base

from loan_ledger.routers import (
    clients_router,
    loans_router,
    payments_router,
    reports_router,
)

logger = get_logger(__name__)

app = FastAPI(title="Loan Ledger API", version="1.0")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(clients_router.router)
app.include_router(loans_router.router)
app.include_router(payments_router.router)
app.include_router(reports_router.router)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.on_event("startup")
def on_startup():
    setup_logging(config.LOG_LEVEL, config.LOG_FORMAT)

    # DEV ONLY – schema is created from the models
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema ready")


@app.get("/")
def root():
    return {"message": "Loan Ledger backend is running!!"}
