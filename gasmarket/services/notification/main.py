"""Notification worker process: Kafka consumers plus a small read API."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query

from gasmarket.common.config import settings
from gasmarket.common.db import SessionLocal
from gasmarket.common.logging import configure_logging
from gasmarket.common.metrics import metrics_response
from gasmarket.common.startup import log_startup_config
from gasmarket.common.tracing import setup_tracing
from gasmarket.services.notification.service import NotificationService

configure_logging()
log_startup_config(settings, ["database_url", "kafka_bootstrap_servers", "notification_webhook_url"])
service = NotificationService(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="GasMarket Notification Service", lifespan=lifespan)
setup_tracing(app)


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


@app.get("/notifications", dependencies=[Depends(enforce_api_key)])
def recent_notifications(recipient_id: str = Query(min_length=1), limit: int = Query(default=20, ge=1, le=100)):
    """Latest messages rendered for one customer or agent."""

    return {"success": True, "notifications": service.recent(recipient_id, limit)}


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/metrics")
def metrics():
    return metrics_response()
