import logging

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from app import config
from app.auth import verify_sepay_key
from app.database import Base, SessionLocal, engine
from app.logging_config import setup_logging
from app.reconciler import process_bank_webhook
from app.routes import admin_router, router
from app.schemas import SepayWebhook

setup_logging(config.LOG_LEVEL, config.LOG_FORMAT)
logger = logging.getLogger(__name__)

app = FastAPI(title="Checkout Reconciliation Service")

app.include_router(router)
app.include_router(admin_router)

Base.metadata.create_all(bind=engine)


def _reconcile(payload):
    db = SessionLocal()
    try:
        return process_bank_webhook(db, payload)
    finally:
        db.close()


@app.post("/webhooks/sepay", dependencies=[Depends(verify_sepay_key)])
async def sepay_webhook(request: Request):
    try:
        payload = SepayWebhook.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid payload"})

    result = await run_in_threadpool(_reconcile, payload)
    # Business failures are acknowledged; the ledger keeps them for follow-up.
    return result.to_response()


def run():
    """Console entry point: ``checkout-service``."""
    uvicorn.run("app.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
