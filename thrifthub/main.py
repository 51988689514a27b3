import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from sqlalchemy.orm import Session

from thrifthub.config import Settings, load_settings
from thrifthub.database import Base, build_engine, build_session_factory, get_db
from thrifthub.errors import register_error_handlers, success_body
from thrifthub.notifications import EmailNotifier
from thrifthub.paystack import PaystackGateway
from thrifthub.routes import get_gateway, get_notifier, router
from thrifthub.webhooks import handle_event


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(settings: Optional[Settings] = None, gateway=None, notifier=None) -> FastAPI:
    """Build the service. Collaborators not passed in are created from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or load_settings()
        configure_logging(cfg.log_level)

        engine = build_engine(cfg.database_url)
        Base.metadata.create_all(bind=engine)

        app.state.settings = cfg
        app.state.session_factory = build_session_factory(engine)
        app.state.gateway = gateway or PaystackGateway.from_settings(cfg)
        app.state.notifier = notifier or EmailNotifier.from_settings(cfg)
        try:
            yield
        finally:
            if gateway is None:
                await app.state.gateway.aclose()
            engine.dispose()

    app = FastAPI(title="ThriftHub Checkout Service", lifespan=lifespan)
    register_error_handlers(app)
    app.include_router(router)

    @app.get("/health")
    def health():
        return success_body({"status": "ok"})

    @app.post("/webhooks/paystack")
    async def paystack_webhook(
        request: Request,
        x_paystack_signature: Optional[str] = Header(None),
        db: Session = Depends(get_db),
        gateway=Depends(get_gateway),
        notifier=Depends(get_notifier),
    ):
        payload = await request.body()
        await handle_event(db, gateway, notifier, payload, x_paystack_signature)
        return success_body(None, "Webhook processed successfully")

    return app


app = create_app()
