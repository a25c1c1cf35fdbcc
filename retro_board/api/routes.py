import asyncio
import json
import logging
from datetime import timedelta
from typing import Callable, List, Optional

from fastapi import (
    APIRouter,
    Cookie,
    Depends,
    HTTPException,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

import data.db as db_module
from api.realtime import RetroHub
from api.schemas import (
    AuthRequest,
    BoardOut,
    MemberCreate,
    MemberOut,
    PresenceOut,
    ProjectCreate,
    ProjectOut,
    RetrospectiveEntryOut,
    RetrospectiveStatusOut,
    SprintCreate,
    SprintOut,
    SprintUpdate,
    UsuarioOut,
)
from config.settings import settings
from core.board import (
    DEFAULT_SCALE,
    add_comment,
    add_note,
    clamp_scale,
    default_categories,
    delete_note,
    dump_categories,
    load_categories,
    move_note,
    reset_zoom,
    zoom_in,
    zoom_out,
)
from core.nicknames import resolve_nickname
from core.reactions import parse_intent, react
from core.roles import (
    Role,
    can_edit_planning,
    can_join_retrospective,
    can_provision_retrospective,
)
from core.security import hash_password, new_session_token, verify_password
from core.session_bootstrap import RetrospectiveBootstrap
from core.view_state import ViewState
from data.db import get_db
from data.models import SPRINT_STATUSES, Project, ProjectMember, Sesion, Sprint, Usuario, now_utc

logger = logging.getLogger(__name__)

router = APIRouter()

SESSION_COOKIE = "scrum_session"
CATEGORIES_KEY = "categories"
SCALE_KEY = "scale"
SHARED_KEYS = {CATEGORIES_KEY, SCALE_KEY}


def get_user_from_token(db: Session, token: Optional[str]) -> Optional[Usuario]:
    if not token:
        return None
    session = (
        db.query(Sesion)
        .options(joinedload(Sesion.usuario))
        .filter(Sesion.token == token)
        .first()
    )
    if not session:
        return None
    if session.expira_en < now_utc():
        db.delete(session)
        db.commit()
        return None
    if not session.usuario or not session.usuario.activo:
        return None
    return session.usuario


def require_user(db: Session, token: Optional[str]) -> Usuario:
    user = get_user_from_token(db, token)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_member(db: Session, user: Usuario, project_id: int) -> ProjectMember:
    member = (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id, ProjectMember.usuario_id == user.id)
        .first()
    )
    if not member:
        raise HTTPException(status_code=403, detail="Not a project member")
    return member


def member_role(member: ProjectMember) -> Role:
    try:
        return Role.parse(member.role)
    except ValueError:
        raise HTTPException(status_code=403, detail="Unknown project role")


def normalize_role(value: Optional[str]) -> str:
    try:
        return Role.parse(value).value
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid role")


def normalize_sprint_status(value: Optional[str]) -> str:
    cleaned = (value or "").strip()
    for status_value in SPRINT_STATUSES:
        if cleaned.lower() == status_value.lower():
            return status_value
    raise HTTPException(status_code=400, detail="Invalid sprint status")


def start_session(db: Session, user: Usuario, response: Response) -> None:
    token = new_session_token()
    expires_at = now_utc() + timedelta(days=settings.session_days)
    db.add(Sesion(usuario_id=user.id, token=token, expira_en=expires_at))
    db.commit()
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        max_age=settings.session_days * 24 * 3600,
        path="/",
    )


def hub_of(app) -> RetroHub:
    return app.state.hub


def bootstrap_of(app) -> RetrospectiveBootstrap:
    return app.state.bootstrap


def get_hub(request: Request) -> RetroHub:
    return hub_of(request.app)


# Auth


@router.post("/auth/bootstrap", response_model=UsuarioOut)
def bootstrap(payload: AuthRequest, response: Response, db: Session = Depends(get_db)):
    exists = db.query(Usuario.id).limit(1).first()
    if exists:
        raise HTTPException(status_code=409, detail="Users already exist")
    return register(payload, response, db)


@router.post("/auth/register", response_model=UsuarioOut, status_code=status.HTTP_201_CREATED)
def register(payload: AuthRequest, response: Response, db: Session = Depends(get_db)):
    username = (payload.username or "").strip().lower()
    if not username or not payload.password:
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if db.query(Usuario).filter(Usuario.username == username).first():
        raise HTTPException(status_code=409, detail="User already exists")
    user = Usuario(
        username=username,
        email=(payload.email or "").strip() or None,
        password_hash=hash_password(payload.password),
        activo=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    start_session(db, user, response)
    return user


@router.post("/auth/login", response_model=UsuarioOut)
def login(payload: AuthRequest, response: Response, db: Session = Depends(get_db)):
    username = (payload.username or "").strip().lower()
    if not username or not payload.password:
        raise HTTPException(status_code=400, detail="Invalid credentials")
    user = db.query(Usuario).filter(Usuario.username == username).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.activo:
        raise HTTPException(status_code=403, detail="Inactive user")
    start_session(db, user, response)
    return user


@router.post("/auth/logout")
def logout(
    response: Response,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    if scrum_session:
        db.query(Sesion).filter(Sesion.token == scrum_session).delete(synchronize_session=False)
        db.commit()
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"ok": True}


@router.get("/auth/me", response_model=UsuarioOut)
def auth_me(scrum_session: Optional[str] = Cookie(default=None), db: Session = Depends(get_db)):
    return require_user(db, scrum_session)


# Projects, members and sprints


@router.post("/projects", response_model=ProjectOut, status_code=status.HTTP_201_CREATED)
def crear_proyecto(
    payload: ProjectCreate,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    user = require_user(db, scrum_session)
    name = (payload.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name required")
    project = Project(
        name=name,
        description=(payload.description or "").strip() or None,
        created_by=user.id,
    )
    db.add(project)
    db.flush()
    # The creator facilitates until roles are reassigned.
    db.add(
        ProjectMember(
            project_id=project.id,
            usuario_id=user.id,
            display_name=None,
            role=Role.SCRUM_MASTER.value,
        )
    )
    db.commit()
    db.refresh(project)
    return project


@router.get("/projects", response_model=List[ProjectOut])
def listar_proyectos(scrum_session: Optional[str] = Cookie(default=None), db: Session = Depends(get_db)):
    user = require_user(db, scrum_session)
    return (
        db.query(Project)
        .join(ProjectMember, ProjectMember.project_id == Project.id)
        .filter(ProjectMember.usuario_id == user.id)
        .order_by(Project.created_at.desc(), Project.id.desc())
        .all()
    )


@router.post(
    "/projects/{project_id}/members",
    response_model=MemberOut,
    status_code=status.HTTP_201_CREATED,
)
def agregar_miembro(
    project_id: int,
    payload: MemberCreate,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    user = require_user(db, scrum_session)
    if not db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    require_member(db, user, project_id)
    if not db.get(Usuario, payload.usuario_id):
        raise HTTPException(status_code=404, detail="User not found")
    member = ProjectMember(
        project_id=project_id,
        usuario_id=payload.usuario_id,
        display_name=(payload.display_name or "").strip() or None,
        role=normalize_role(payload.role),
    )
    db.add(member)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Already a member")
    db.refresh(member)
    return member


@router.get("/projects/{project_id}/members", response_model=List[MemberOut])
def listar_miembros(
    project_id: int,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    user = require_user(db, scrum_session)
    require_member(db, user, project_id)
    return (
        db.query(ProjectMember)
        .filter(ProjectMember.project_id == project_id)
        .order_by(ProjectMember.id)
        .all()
    )


@router.post(
    "/projects/{project_id}/sprints",
    response_model=SprintOut,
    status_code=status.HTTP_201_CREATED,
)
def crear_sprint(
    project_id: int,
    payload: SprintCreate,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    user = require_user(db, scrum_session)
    if not db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    require_member(db, user, project_id)
    name = (payload.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name required")
    if payload.start_date and payload.end_date and payload.end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="End date before start date")
    sprint = Sprint(
        project_id=project_id,
        name=name,
        goal=(payload.goal or "").strip() or None,
        start_date=payload.start_date,
        end_date=payload.end_date,
        status=normalize_sprint_status(payload.status),
    )
    db.add(sprint)
    db.commit()
    db.refresh(sprint)
    return sprint


@router.get("/projects/{project_id}/sprints", response_model=List[SprintOut])
def listar_sprints(
    project_id: int,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    user = require_user(db, scrum_session)
    require_member(db, user, project_id)
    return (
        db.query(Sprint)
        .filter(Sprint.project_id == project_id)
        .order_by(Sprint.start_date, Sprint.id)
        .all()
    )


@router.get("/sprints/{sprint_id}", response_model=SprintOut)
def obtener_sprint(
    sprint_id: int,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    user = require_user(db, scrum_session)
    sprint = db.get(Sprint, sprint_id)
    if not sprint:
        raise HTTPException(status_code=404, detail="Sprint not found")
    require_member(db, user, sprint.project_id)
    return sprint


@router.put("/sprints/{sprint_id}", response_model=SprintOut)
def actualizar_sprint(
    sprint_id: int,
    payload: SprintUpdate,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    user = require_user(db, scrum_session)
    sprint = db.get(Sprint, sprint_id)
    if not sprint:
        raise HTTPException(status_code=404, detail="Sprint not found")
    role = member_role(require_member(db, user, sprint.project_id))
    if not can_edit_planning(role):
        raise HTTPException(status_code=403, detail="Planning is read-only for this role")
    if payload.name is not None:
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name required")
        sprint.name = name
    if payload.goal is not None:
        sprint.goal = payload.goal.strip() or None
    if payload.start_date is not None:
        sprint.start_date = payload.start_date
    if payload.end_date is not None:
        sprint.end_date = payload.end_date
    if sprint.start_date and sprint.end_date and sprint.end_date < sprint.start_date:
        raise HTTPException(status_code=400, detail="End date before start date")
    if payload.status is not None:
        sprint.status = normalize_sprint_status(payload.status)
    sprint.updated_at = now_utc()
    db.commit()
    db.refresh(sprint)
    return sprint


# Retrospective entry


def sprint_and_role(db: Session, token: Optional[str], sprint_id: int) -> tuple[Sprint, Role]:
    user = require_user(db, token)
    sprint = db.get(Sprint, sprint_id)
    if not sprint:
        raise HTTPException(status_code=404, detail="Sprint not found")
    role = member_role(require_member(db, user, sprint.project_id))
    return sprint, role


@router.get("/sprints/{sprint_id}/retrospective", response_model=RetrospectiveStatusOut)
def estado_retrospectiva(
    sprint_id: int,
    request: Request,
    scrum_session: Optional[str] = Cookie(default=None),
    db: Session = Depends(get_db),
):
    sprint, role = sprint_and_role(db, scrum_session, sprint_id)
    return {
        "sprint_id": sprint.id,
        "url": sprint.retrospective_url,
        "join_control": bootstrap_of(request.app).join_control(sprint, role),
        "role": role.value,
    }


@router.post("/sprints/{sprint_id}/retrospective", response_model=RetrospectiveEntryOut)
async def entrar_retrospectiva(
    sprint_id: int,
    request: Request,
    scrum_session: Optional[str] = Cookie(default=None),
):
    def resolve() -> tuple[bool, Role]:
        db = db_module.SessionLocal()
        try:
            sprint, role = sprint_and_role(db, scrum_session, sprint_id)
            return bool(sprint.retrospective_url), role
        finally:
            db.close()

    # SQLAlchemy is sync; keep it off the event loop.
    has_url, role = await asyncio.to_thread(resolve)
    if not can_join_retrospective(role, has_url):
        raise HTTPException(status_code=403, detail="Retrospective not started yet")
    navigation = await bootstrap_of(request.app).enter(sprint_id, role)
    if navigation is None:
        raise HTTPException(status_code=503, detail="Could not start the retrospective")
    return {"url": navigation.url, "created": navigation.created}


# Board


@router.get("/retros/{token}/board", response_model=BoardOut)
def obtener_tablero(token: str, hub: RetroHub = Depends(get_hub)):
    if not hub.has_session(token):
        raise HTTPException(status_code=404, detail="Retrospective not found")
    categories = hub.shared_value(token, CATEGORIES_KEY, default_categories())
    scale = hub.shared_value(token, SCALE_KEY, DEFAULT_SCALE)
    return {
        "token": token,
        "join_url": hub.session_join_url(token),
        "categories": dump_categories(categories),
        "scale": scale,
        "versions": hub.snapshot(token)["versions"],
        "nicknames": hub.nickname_map(token),
    }


@router.get("/retros/{token}/presence", response_model=PresenceOut)
def obtener_presencia(token: str, hub: RetroHub = Depends(get_hub)):
    if not hub.has_session(token):
        raise HTTPException(status_code=404, detail="Retrospective not found")
    return hub.build_presence_payload(token)


@router.delete("/retros/{token}")
async def cerrar_retrospectiva(
    token: str,
    request: Request,
    scrum_session: Optional[str] = Cookie(default=None),
):
    def can_close() -> bool:
        db = db_module.SessionLocal()
        try:
            user = require_user(db, scrum_session)
            memberships = (
                db.query(ProjectMember)
                .join(Sprint, Sprint.project_id == ProjectMember.project_id)
                .filter(
                    ProjectMember.usuario_id == user.id,
                    Sprint.retrospective_url == f"{settings.retro_route}?session={token}",
                )
                .all()
            )
            return any(can_provision_retrospective(member_role(m)) for m in memberships)
        finally:
            db.close()

    hub = hub_of(request.app)
    if not hub.has_session(token):
        raise HTTPException(status_code=404, detail="Retrospective not found")
    if not await asyncio.to_thread(can_close):
        raise HTTPException(status_code=403, detail="Only the facilitator can close")
    await hub.close_session(token)
    return {"ok": True}


def lookup_nickname(session_token: Optional[str], project_id: Optional[int]) -> str:
    db = db_module.SessionLocal()
    try:
        user = get_user_from_token(db, session_token)
        if not user:
            return resolve_nickname([], None, None)
        members = []
        if project_id is not None:
            members = db.query(ProjectMember).filter(ProjectMember.project_id == project_id).all()
        return resolve_nickname(members, user.id, user.email)
    finally:
        db.close()


def parse_project_id(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def board_transform(payload: dict, participant_id: str, author: str) -> Callable:
    kind = payload.get("type")
    if kind == "add_note":
        return lambda cats: add_note(cats, str(payload.get("category_id")), payload.get("text") or "")
    if kind == "delete_note":
        return lambda cats: delete_note(
            cats, str(payload.get("category_id")), str(payload.get("note_id"))
        )
    if kind == "add_comment":
        return lambda cats: add_comment(
            cats,
            str(payload.get("category_id")),
            str(payload.get("note_id")),
            payload.get("text") or "",
            author,
        )
    if kind == "react":
        intent = parse_intent(payload.get("reaction"))
        return lambda cats: react(
            cats, str(payload.get("category_id")), str(payload.get("note_id")), participant_id, intent
        )
    if kind == "move_note":
        return lambda cats: move_note(
            cats,
            str(payload.get("source_category_id")),
            str(payload.get("target_category_id")),
            str(payload.get("note_id")),
        )
    raise ValueError(f"Unknown operation: {kind!r}")


BOARD_OPERATIONS = {"add_note", "delete_note", "add_comment", "react", "move_note"}
ZOOM_ACTIONS = {
    "in": zoom_in,
    "out": zoom_out,
    "reset": lambda scale: reset_zoom(),
}


def validate_shared_value(key: str, value):
    if key == CATEGORIES_KEY:
        return load_categories(value)
    if key == SCALE_KEY:
        return clamp_scale(value)
    raise ValueError(f"Unknown key: {key!r}")


@router.websocket("/ws/retros/{token}")
async def retro_ws(websocket: WebSocket, token: str) -> None:
    hub = hub_of(websocket.app)
    session_token = websocket.cookies.get(SESSION_COOKIE)
    project_id = parse_project_id(websocket.query_params.get("project_id"))
    participant_id = await hub.connect(token, websocket)
    hub.shared_value(token, CATEGORIES_KEY, default_categories())
    hub.shared_value(token, SCALE_KEY, DEFAULT_SCALE)
    view = ViewState()

    async def identify() -> str:
        nickname = await asyncio.to_thread(lookup_nickname, session_token, project_id)
        hub.set_nickname(token, participant_id, nickname)
        return nickname

    async def reply_error(detail: str) -> None:
        await hub.send_one(token, websocket, {"type": "error", "detail": detail})

    try:
        await identify()
        await hub.send_one(token, websocket, hub.welcome_payload(token, websocket))
        while True:
            message = await websocket.receive_text()
            if not message:
                continue
            if message == "ping":
                hub.touch(token, websocket)
                continue
            try:
                payload = json.loads(message)
            except json.JSONDecodeError:
                await reply_error("Invalid JSON")
                continue
            if not isinstance(payload, dict):
                await reply_error("Invalid message")
                continue
            hub.touch(token, websocket)
            kind = payload.get("type")
            if kind == "identify":
                if "project_id" in payload:
                    project_id = parse_project_id(payload.get("project_id"))
                await identify()
            elif kind == "set":
                key = payload.get("key")
                if key not in SHARED_KEYS:
                    await reply_error("Unknown key")
                    continue
                try:
                    value = validate_shared_value(key, payload.get("value"))
                except (ValidationError, ValueError, TypeError):
                    logger.warning("Rejected %s value on session %s", key, token)
                    await reply_error(f"Invalid value for {key}")
                    continue
                hub.set_value(token, key, value)
                if key == CATEGORIES_KEY:
                    view.prune(value)
            elif kind in BOARD_OPERATIONS:
                try:
                    transform = board_transform(
                        payload, participant_id, hub.nickname_of(token, participant_id)
                    )
                except ValueError as err:
                    await reply_error(str(err))
                    continue
                hub.apply(token, CATEGORIES_KEY, transform, default_categories())
                if kind == "add_note":
                    view.close_composer()
                    await hub.send_one(token, websocket, view.as_dict())
                elif kind == "delete_note" and view.active_note:
                    view.note_deleted(str(payload.get("note_id")))
                    await hub.send_one(token, websocket, view.as_dict())
            elif kind == "zoom":
                action = ZOOM_ACTIONS.get(payload.get("action"))
                if action is None:
                    await reply_error("Invalid zoom action")
                    continue
                hub.apply(token, SCALE_KEY, action, DEFAULT_SCALE)
            elif kind == "chat":
                hub.post_chat(token, participant_id, payload.get("text") or "")
            elif kind in {"open_composer", "close_composer", "open_comments", "close_comments", "toggle_chat"}:
                if kind == "open_composer":
                    view.open_composer(str(payload.get("category_id")))
                elif kind == "close_composer":
                    view.close_composer()
                elif kind == "open_comments":
                    categories = hub.shared_value(token, CATEGORIES_KEY, default_categories())
                    view.open_comments(
                        categories, str(payload.get("category_id")), str(payload.get("note_id"))
                    )
                elif kind == "close_comments":
                    view.close_comments()
                else:
                    view.toggle_chat()
                await hub.send_one(token, websocket, view.as_dict())
            elif kind == "leave":
                await hub.leave_session(token, websocket)
                return
            else:
                await reply_error("Unknown message type")
    except WebSocketDisconnect:
        hub.disconnect(token, websocket)
        hub.enqueue(token, hub.build_presence_payload(token))
    except Exception:
        logger.exception("Retrospective socket failed on session %s", token)
        hub.disconnect(token, websocket)
        hub.enqueue(token, hub.build_presence_payload(token))
