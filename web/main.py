"""ASGI application wiring the exception handler into FastAPI."""

from __future__ import annotations

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from core.env_utils import load_dotenv_if_available
from core.handler_config import get_handler_config, load_handler_config_from_env
from core.logging import setup_logging
from web.error_middleware import register_exception_handling


def create_app() -> FastAPI:
    setup_logging()
    load_dotenv_if_available()
    load_handler_config_from_env()

    app = FastAPI(title=get_handler_config().app_name or "errordesk")
    register_exception_handling(app)

    @app.get("/healthz", include_in_schema=False)
    def health_check():
        config = get_handler_config()
        return {"status": "ok", "app": config.app_name, "notificationChannel": config.notification_channel}

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        """Expose Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
