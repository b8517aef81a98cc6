from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import httpx

from webedt.core.auth.service import AuthService
from webedt.core.config.loader import load_app_config
from webedt.core.config.schema import AppConfig
from webedt.core.relay.relay import StreamRelay
from webedt.core.sessions.store import SessionStore
from webedt.core.telemetry.logging import configure_logging
from webedt.db.session import create_session_factory, init_db


@dataclass(slots=True)
class WebRuntime:
    cfg: AppConfig
    db_session_factory: object
    engine: object
    store: SessionStore
    auth: AuthService
    relay: StreamRelay


def build_runtime(
    config_path: str | None = None,
    *,
    cfg: AppConfig | None = None,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> WebRuntime:
    cfg = cfg or load_app_config(instance_path=config_path)
    configure_logging(cfg.telemetry.log_level, cfg.telemetry.json_logs)

    db_session_factory, engine = create_session_factory(cfg.database.url)
    init_db(engine)

    store = SessionStore(db_session_factory)
    auth = AuthService(db_session_factory=db_session_factory, session_ttl_hours=cfg.auth.session_ttl_hours)
    relay = StreamRelay(store=store, worker=cfg.worker, client_factory=client_factory)
    return WebRuntime(
        cfg=cfg,
        db_session_factory=db_session_factory,
        engine=engine,
        store=store,
        auth=auth,
        relay=relay,
    )
