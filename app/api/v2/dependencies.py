import logging

from typing import Generator, Optional, Union

from fastapi import Depends, Header, HTTPException, Request, WebSocket, status
from starlette.datastructures import State
from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.services.badge_session_service import BadgeSessionRegistry, badge_sessions

log = logging.getLogger(__name__)

ScopeType = Union[Request, WebSocket]


def _get_state_container(scope: ScopeType | None) -> Optional[State]:
    """Return the mutable state object associated with the request/websocket."""

    if scope is None:
        return None

    state = getattr(scope, "state", None)
    if state is None:
        state = State()
        setattr(scope, "state", state)
    return state


def _resolve_scope(
    request: Request = None,  # type: ignore[assignment]
    websocket: WebSocket = None,  # type: ignore[assignment]
) -> ScopeType | None:
    """Return the current Request or WebSocket when used as a dependency."""

    return request or websocket


def get_db(
    scope: ScopeType | None = Depends(_resolve_scope),
) -> Generator[Session, None, None]:
    """Provide a SQLAlchemy session shared within a single request.

    Several dependencies of the same request may ask for a session; the first
    one opens it on ``request.state`` (or ``websocket.state``) and a reference
    counter keeps it open until the last dependency exits. Without a request
    context (background work) a private session is opened and closed.
    """

    if scope is None:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()
        return

    state = _get_state_container(scope)
    db = getattr(state, "_db_session", None)
    if db is None:
        db = SessionLocal()
        setattr(state, "_db_session", db)
        setattr(state, "_db_refcount", 0)

    refcount = getattr(state, "_db_refcount", 0) + 1
    setattr(state, "_db_refcount", refcount)

    try:
        yield db
    finally:
        refcount = getattr(state, "_db_refcount", 1) - 1
        if refcount <= 0:
            try:
                db.close()
            finally:
                for attr in ("_db_session", "_db_refcount"):
                    if hasattr(state, attr):
                        delattr(state, attr)
        else:
            setattr(state, "_db_refcount", refcount)


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Identité de l'appelant, posée par la passerelle d'authentification (hors périmètre)."""

    user_id = (x_user_id or "").strip()
    if not user_id:
        log.warning("Requête refusée: en-tête X-User-Id absent.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_user_id")
    return user_id


def get_badge_registry() -> BadgeSessionRegistry:
    return badge_sessions
