# app/dependencies.py

"""
FastAPI dependencies.

Validates Supabase JWTs and wires the reconciliation components.
"""

from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import MatchingConfig, get_matching_config
from app.core.errors import AlreadyLinked, NotFound, PersistenceFailure, ReconciliationError
from app.core.groups import InstallmentGroupReconciler
from app.core.learning import LearningReconciler, TrainingPool
from app.core.links import LinkWriter
from app.core.matching import ReconciliationEngine
from app.core.store import ReconciliationStore
from app.database import SupabaseStore, get_supabase_admin

security = HTTPBearer()


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Validate the Supabase JWT and return the user_id.

    This is a sync function -- FastAPI auto-runs it in a threadpool.
    """
    token = credentials.credentials

    try:
        user_response = get_supabase_admin().auth.get_user(token)
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if user_response is None or user_response.user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user_response.user.id


def get_store() -> ReconciliationStore:
    return SupabaseStore()


@lru_cache()
def get_training_pool() -> TrainingPool:
    """Process-wide pool of pairs matched by the learning path."""
    return TrainingPool()


def get_engine(
    store: ReconciliationStore = Depends(get_store),
    config: MatchingConfig = Depends(get_matching_config),
) -> ReconciliationEngine:
    return ReconciliationEngine(store, config)


def get_learning_reconciler(
    engine: ReconciliationEngine = Depends(get_engine),
    pool: TrainingPool = Depends(get_training_pool),
) -> LearningReconciler:
    return LearningReconciler(engine.store, engine.config, engine=engine, pool=pool)


def get_group_reconciler(engine: ReconciliationEngine = Depends(get_engine)) -> InstallmentGroupReconciler:
    return InstallmentGroupReconciler(engine.store, engine.config, engine=engine)


def get_link_writer(store: ReconciliationStore = Depends(get_store)) -> LinkWriter:
    return LinkWriter(store)


def to_http_error(error: ReconciliationError) -> HTTPException:
    """Map a core error to the HTTP status routers respond with."""
    if isinstance(error, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, AlreadyLinked):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, PersistenceFailure):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Storage unavailable, try again later",
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
