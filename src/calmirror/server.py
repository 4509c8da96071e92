import asyncio
import logging
import os
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

import pytz
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import RedirectResponse

from .config import Settings, load_settings
from .models import CallbackOutcome
from .oauth import CalendarOAuthFlow, OAuthExchanger
from .state import StateTokenCodec
from .status import ConnectionStatusProjector
from .sync_engine import EventSyncEngine

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CALMIRROR_CONFIG"


class SyncRuntime:
    """Background loop running ``sync_all`` on an interval or when signalled."""

    def __init__(self, engine: EventSyncEngine):
        self.engine = engine
        self.trigger = asyncio.Event()
        self.running = True
        self.last_sync: Optional[datetime] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.loop_interval_seconds = engine.settings.sync_config.sync_interval_minutes * 60

    async def run(self):
        while self.running:
            try:
                try:
                    await asyncio.wait_for(self.trigger.wait(), timeout=self.loop_interval_seconds)
                except asyncio.TimeoutError:
                    pass
                finally:
                    self.trigger.clear()
                if not self.running:
                    break

                results = await self.engine.sync_all()
                failed = [user_id for user_id, r in results.items() if not r.success]
                if failed:
                    logger.warning("Scheduled sync failed for %d of %d users", len(failed), len(results))
                self.last_sync = datetime.now(pytz.UTC)
            except Exception:
                # Keep the loop alive; the next tick retries
                logger.exception("Scheduled sync pass crashed")
                await asyncio.sleep(2)

    def signal(self):
        if not self.trigger.is_set():
            self.trigger.set()


class AppContainer:
    """Components shared by the routes."""

    def __init__(self, engine: EventSyncEngine):
        settings = engine.settings
        self.settings = settings
        self.engine = engine
        self.store = engine.store
        self.codec = StateTokenCodec(settings.state_secret, settings.oauth_state_ttl_seconds)
        self.flow = CalendarOAuthFlow(
            settings, self.codec, OAuthExchanger(engine.google_service, engine.store, engine.clock)
        )
        self.projector = ConnectionStatusProjector(engine.store)
        self.runtime = SyncRuntime(engine)


def get_container(request: Request) -> AppContainer:
    return request.app.state.container


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """The authenticated user id, supplied by the fronting auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="missing X-User-Id header")
    return x_user_id


def callback_redirect_url(settings: Settings, outcome: CallbackOutcome) -> str:
    if outcome.success:
        base = settings.oauth_success_redirect
        params = {'calendar': 'connected'}
    else:
        base = settings.oauth_error_redirect
        params = {'calendar_error': outcome.reason, 'message': outcome.message}
    separator = '&' if '?' in base else '?'
    return f"{base}{separator}{urlencode(params)}"


def load_server_settings() -> Settings:
    """Settings for the served app; `calmirror serve --config` hands its file over in the environment."""
    return load_settings(os.getenv(CONFIG_ENV_VAR) or None)


def create_app(engine: Optional[EventSyncEngine] = None, run_scheduler: bool = True) -> FastAPI:
    app = FastAPI(title="calmirror", version="1.0")

    @app.on_event("startup")
    async def on_startup():
        sync_engine = engine or EventSyncEngine(load_server_settings())
        await sync_engine.initialize()
        container = AppContainer(sync_engine)
        app.state.container = container
        app.title = container.settings.app_name
        if run_scheduler and container.settings.sync_config.enable_scheduled_sync:
            container.runtime.sync_task = asyncio.create_task(container.runtime.run())

    @app.on_event("shutdown")
    async def on_shutdown():
        container: AppContainer = app.state.container
        runtime = container.runtime
        runtime.running = False
        runtime.signal()
        if runtime.sync_task:
            await asyncio.wait([runtime.sync_task], timeout=5)
        await container.engine.cleanup()

    @app.get("/health")
    async def health(container: AppContainer = Depends(get_container)):
        rt = container.runtime
        return {
            "ok": True,
            "last_sync": rt.last_sync.isoformat() if rt.last_sync else None,
            "interval_seconds": rt.loop_interval_seconds,
        }

    @app.get("/api/calendar/auth-url")
    async def auth_url(
        user_id: str = Depends(get_user_id),
        container: AppContainer = Depends(get_container)
    ):
        return {"auth_url": container.flow.authorization_url(user_id)}

    @app.get("/api/auth/google/calendar/callback")
    async def oauth_callback(
        code: Optional[str] = Query(None),
        state: Optional[str] = Query(None),
        error: Optional[str] = Query(None),
        scope: Optional[str] = Query(None),
        container: AppContainer = Depends(get_container)
    ):
        outcome = await container.flow.handle_callback(code=code, state=state, error=error, scope=scope)
        if outcome.success and outcome.user_id:
            container.runtime.signal()
        return RedirectResponse(callback_redirect_url(container.settings, outcome), status_code=303)

    @app.get("/api/calendar/status")
    async def calendar_status(
        user_id: str = Depends(get_user_id),
        container: AppContainer = Depends(get_container)
    ):
        return container.projector.status(user_id).model_dump(mode="json", by_alias=True)

    @app.post("/api/calendar/sync")
    async def calendar_sync(
        user_id: str = Depends(get_user_id),
        container: AppContainer = Depends(get_container)
    ):
        result = await container.engine.sync(user_id)
        return result.to_dict()

    @app.post("/api/calendar/disconnect")
    async def calendar_disconnect(
        user_id: str = Depends(get_user_id),
        container: AppContainer = Depends(get_container)
    ):
        result = container.store.disconnect(user_id)
        return {"success": result.success, "message": result.message}

    @app.get("/api/calendar/events")
    async def calendar_events(
        user_id: str = Depends(get_user_id),
        container: AppContainer = Depends(get_container)
    ):
        events = container.engine.list_events(user_id)
        return {"events": [event.model_dump(mode="json") for event in events]}

    return app


app = create_app()
