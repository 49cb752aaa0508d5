from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.logging import configure_logging
from app.telemetry import setup_otel
from app.web.public.channel_webhooks import router as channel_webhooks_router

configure_logging()

app = FastAPI(title="Helpdesk Channels API")

setup_otel(app)

app.include_router(channel_webhooks_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def head_health():
    return Response(status_code=200)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
