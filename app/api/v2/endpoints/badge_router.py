import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.v2.dependencies import get_badge_registry, get_current_user_id, get_db
from app.crud import badge_crud
from app.gamification.errors import WriteError
from app.gamification.reconciler import AnswerStatus, WRITE_FAILED_MESSAGE
from app.gamification.types import AggregateState
from app.schemas.user.badge_schema import (
    AggregateRead,
    AnswerResult,
    AnswerSubmit,
    BadgeWithStatus,
    CatalogTotals,
    SuspicionResult,
)
from app.services.badge_session_service import BadgeSessionRegistry, badge_change_feed, describe_badges
from app.services.suspicion_service import SuspicionError, SuspicionService

log = logging.getLogger(__name__)

router = APIRouter()


def _aggregate_read(aggregate: AggregateState) -> AggregateRead:
    return AggregateRead(**aggregate.as_dict())


async def _session_or_503(registry: BadgeSessionRegistry, user_id: str, db: Session):
    try:
        return await registry.get_session(user_id, db)
    except WriteError as exc:
        log.error("Session badges indisponible pour %s: %s", user_id, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=WRITE_FAILED_MESSAGE)


@router.get("/", response_model=list[BadgeWithStatus], summary="Liste des badges et progression")
async def list_badges(
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
    registry: BadgeSessionRegistry = Depends(get_badge_registry),
):
    reconciler = await _session_or_503(registry, current_user_id, db)
    return describe_badges(reconciler.catalog, reconciler.records, reconciler.aggregate, registry.scorer)


@router.get("/me", response_model=AggregateRead, summary="Skills, rang et compteurs de l'utilisateur")
async def read_my_stats(
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
    registry: BadgeSessionRegistry = Depends(get_badge_registry),
):
    reconciler = await _session_or_503(registry, current_user_id, db)
    return _aggregate_read(reconciler.aggregate)


@router.get("/totals", response_model=CatalogTotals, summary="Total des skills du catalogue")
async def read_catalog_totals(
    db: Session = Depends(get_db),
    registry: BadgeSessionRegistry = Depends(get_badge_registry),
):
    catalog = registry.catalog(db)
    total_skills, total_low_skills = registry.scorer.catalog_totals(catalog)
    return CatalogTotals(
        badge_count=len(catalog.visible_badges()),
        total_skills=total_skills,
        total_low_skills=total_low_skills,
        max_points={badge.id: registry.scorer.max_points(badge) for badge in catalog},
    )


@router.post("/{badge_id}/answer", response_model=AnswerResult, summary="Répondre à la question d'un badge")
async def answer_badge(
    badge_id: str,
    payload: AnswerSubmit,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
    registry: BadgeSessionRegistry = Depends(get_badge_registry),
):
    reconciler = await _session_or_503(registry, current_user_id, db)
    outcome = await reconciler.apply_answer(badge_id, payload.answer, payload.options)
    if outcome.status is AnswerStatus.WRITE_FAILED:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=outcome.message)

    evaluation = outcome.evaluation
    return AnswerResult(
        status=outcome.status.value,
        ok=outcome.ok,
        level=evaluation.display_level if evaluation is not None else None,
        message=outcome.message,
        aggregate=_aggregate_read(outcome.aggregate),
    )


@router.get("/users/{user_id}/stats", response_model=AggregateRead, summary="Statistiques publiques d'un utilisateur")
async def read_user_stats(
    user_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
    registry: BadgeSessionRegistry = Depends(get_badge_registry),
):
    profile = badge_crud.get_profile(db, user_id)
    if profile is not None and profile.is_private and user_id != current_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="profile_private")
    try:
        aggregate = await registry.public_stats(user_id, db)
    except WriteError as exc:
        log.error("Statistiques de %s indisponibles: %s", user_id, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=WRITE_FAILED_MESSAGE)
    return _aggregate_read(aggregate)


@router.post(
    "/users/{user_id}/{badge_id}/suspicions",
    response_model=SuspicionResult,
    summary="Soupçonner le badge d'un autre utilisateur",
)
async def suspect_badge(
    user_id: str,
    badge_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    service = SuspicionService(db, current_user_id, feed=badge_change_feed)
    try:
        return service.suspect_badge(user_id, badge_id)
    except SuspicionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.code)


@router.delete(
    "/users/{user_id}/{badge_id}/suspicions",
    response_model=SuspicionResult,
    summary="Retirer son soupçon",
)
async def remove_suspicion(
    user_id: str,
    badge_id: str,
    db: Session = Depends(get_db),
    current_user_id: str = Depends(get_current_user_id),
):
    service = SuspicionService(db, current_user_id, feed=badge_change_feed)
    try:
        return service.remove_suspicion(user_id, badge_id)
    except SuspicionError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.code)
