"""
FastAPI dependencies (DB session, authentication, background services)
"""
from fastapi import Depends, Request, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker

from app.application.totals_refresh import TotalsRefreshQueue
from app.infrastructure.db.models import User
from app.infrastructure.locks import UserLockRegistry


def get_session_maker(request: Request) -> sessionmaker:
    """Session factory created by the app lifespan (app.state.database)."""
    return request.app.state.database.session_factory


def get_db(session_factory: sessionmaker = Depends(get_session_maker)):
    """
    Dependency для FastAPI - создает session и автоматически закрывает
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Получить текущего пользователя из session (для API endpoints)

    Raises:
        HTTPException(401): если не залогинен

    Usage:
        @router.get("/runs/totals")
        def totals(user: User = Depends(get_current_user)):
            ...
    """
    user_id = request.session.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    """Return current user if admin, otherwise raise 403."""
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Доступ запрещён")
    return user


def get_refresh_queue(session_factory: sessionmaker = Depends(get_session_maker)) -> TotalsRefreshQueue:
    from app.application.scheduler import get_refresh_queue as _queue
    return _queue(session_factory)


def get_user_locks() -> UserLockRegistry:
    from app.application.scheduler import user_locks
    return user_locks
