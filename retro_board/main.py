import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import joinedload

from api.realtime import RetroHub
from api.routes import SESSION_COOKIE, router
from config.log_config import configure_logging
from config.settings import settings
from core.scheduling import PeriodicTask
from core.session_bootstrap import RetrospectiveBootstrap
from data.db import SessionLocal, engine
from data.models import Base, Sesion, now_utc
from data.sprint_store import SqlSprintStore

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Retro Board", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

PUBLIC_PREFIXES = ("/auth", "/docs", "/openapi", "/redoc", "/retros/", "/ws/retros/")


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    path = request.url.path
    if request.method == "OPTIONS":
        return await call_next(request)
    if path == "/" or path.startswith(PUBLIC_PREFIXES):
        return await call_next(request)
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return JSONResponse(status_code=401, content={"detail": "Not authenticated"})
    db = SessionLocal()
    try:
        session = (
            db.query(Sesion)
            .options(joinedload(Sesion.usuario))
            .filter(Sesion.token == token)
            .first()
        )
        if not session or session.expira_en < now_utc() or not session.usuario or not session.usuario.activo:
            if session and session.expira_en < now_utc():
                db.delete(session)
                db.commit()
            return JSONResponse(status_code=401, content={"detail": "Not authenticated"})
        request.state.user_id = session.usuario.id
    finally:
        db.close()
    return await call_next(request)


@app.get("/")
def healthcheck():
    return {"status": "ok"}


def migrate_schema() -> None:
    # create_all doesn't alter; older Postgres databases predate these columns.
    if getattr(engine.dialect, "name", "") != "postgresql":
        return
    with engine.begin() as conn:
        columns = conn.execute(
            text(
                "select column_name from information_schema.columns "
                "where table_name = 'sprints'"
            )
        ).fetchall()
        column_names = {row[0] for row in columns}
        if column_names and "retrospective_url" not in column_names:
            conn.execute(text("alter table sprints add column retrospective_url varchar(500)"))
        columns = conn.execute(
            text(
                "select column_name from information_schema.columns "
                "where table_name = 'usuarios'"
            )
        ).fetchall()
        column_names = {row[0] for row in columns}
        if column_names and "email" not in column_names:
            conn.execute(text("alter table usuarios add column email varchar(255)"))


@app.on_event("startup")
async def startup():
    Base.metadata.create_all(bind=engine)
    migrate_schema()
    hub = RetroHub(
        join_url_base=f"{settings.public_base_url.rstrip('/')}{settings.planning_route}",
        stale_after_seconds=settings.stale_after_seconds,
        chat_history_limit=settings.chat_history_limit,
    )
    app.state.hub = hub
    app.state.bootstrap = RetrospectiveBootstrap(
        hub,
        SqlSprintStore(),
        base_url=settings.public_base_url,
        retro_route=settings.retro_route,
        planning_route=settings.planning_route,
        join_url_timeout=settings.join_url_timeout,
    )
    app.state.presence_sweep = PeriodicTask(
        settings.presence_sweep_seconds, hub.sweep_presence, name="presence-sweep"
    )
    app.state.presence_sweep.start()
    logger.info("Retro board started (%s)", settings.app_env)


@app.on_event("shutdown")
async def shutdown():
    await app.state.presence_sweep.stop()


app.include_router(router)
