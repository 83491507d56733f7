from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from daggergm.db.session import get_db
from daggergm.modules.adventures.lifecycle import AdventureLifecycle
from daggergm.modules.adventures.results import OperationFailure, OperationResult
from daggergm.modules.adventures.schemas import (
    AdventureCreated,
    AdventureOut,
    AdventureSummaryOut,
    ConfirmationOut,
    ContentRegenerationOut,
    ExpansionOut,
    RefinementOut,
    RefineRequest,
    ScaffoldRegenerationOut,
    Scene,
    StateChangeOut,
)
from daggergm.modules.auth.deps import optional_user_token
from daggergm.modules.auth.identity import resolve_user_id
from daggergm.modules.generation.service import get_generation_gateway
from daggergm.modules.regeneration.counter import RegenerationCounts

router = APIRouter(prefix="/api/v1", tags=["adventures"])

FAILURE_STATUS: dict[str, int] = {
    "UNAUTHORIZED": status.HTTP_401_UNAUTHORIZED,
    "FORBIDDEN": status.HTTP_403_FORBIDDEN,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INSUFFICIENT_CREDITS": status.HTTP_402_PAYMENT_REQUIRED,
    "LIMIT_EXCEEDED": status.HTTP_429_TOO_MANY_REQUESTS,
    "SCENE_LOCKED": status.HTTP_409_CONFLICT,
    "NOT_ALL_SCENES_CONFIRMED": status.HTTP_409_CONFLICT,
    "CONFLICT": status.HTTP_409_CONFLICT,
    "INVALID_INPUT": 422,
    "GENERATION_FAILED": status.HTTP_502_BAD_GATEWAY,
}


def _lifecycle() -> AdventureLifecycle:
    return AdventureLifecycle(gateway=get_generation_gateway())


def _actor_user_id(token: str | None = Depends(optional_user_token)) -> str | None:
    return resolve_user_id(token)


def _raise_failure(error: OperationFailure) -> None:
    detail: dict[str, Any] = {"code": error.code, "message": error.message}
    if error.details:
        detail["details"] = error.details
    raise HTTPException(
        status_code=FAILURE_STATUS.get(error.code, status.HTTP_400_BAD_REQUEST),
        detail=detail,
    )


def _unwrap(result: OperationResult):
    if not result.ok:
        _raise_failure(result.error)
    return result.value


@router.post("/adventures", response_model=AdventureCreated, status_code=status.HTTP_201_CREATED)
def create_adventure(
    payload: dict[str, Any] = Body(...),
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().create_adventure(db, payload, actor_user_id))


@router.get("/adventures", response_model=list[AdventureSummaryOut])
def list_adventures(
    include_archived: bool = False,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    records = _unwrap(_lifecycle().list_adventures(db, actor_user_id, include_archived=include_archived))
    return [AdventureSummaryOut.from_record(record) for record in records]


@router.get("/adventures/{adventure_id}", response_model=AdventureOut)
def get_adventure(
    adventure_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return AdventureOut.from_record(_unwrap(_lifecycle().get_adventure(db, adventure_id, actor_user_id)))


@router.get("/adventures/{adventure_id}/regenerations", response_model=RegenerationCounts)
def get_regeneration_counts(
    adventure_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().get_regeneration_counts(db, adventure_id, actor_user_id))


@router.post(
    "/adventures/{adventure_id}/scenes/{scene_id}/regenerate-scaffold",
    response_model=ScaffoldRegenerationOut,
)
def regenerate_scaffold_scene(
    adventure_id: str,
    scene_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().regenerate_scaffold_scene(db, adventure_id, scene_id, actor_user_id))


@router.post("/adventures/{adventure_id}/scenes/{scene_id}/expand", response_model=ExpansionOut)
def expand_scene(
    adventure_id: str,
    scene_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().expand_scene(db, adventure_id, scene_id, actor_user_id))


@router.post(
    "/adventures/{adventure_id}/scenes/{scene_id}/regenerate-expansion",
    response_model=ContentRegenerationOut,
)
def regenerate_expansion(
    adventure_id: str,
    scene_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().regenerate_expansion(db, adventure_id, scene_id, actor_user_id))


@router.post("/adventures/{adventure_id}/scenes/{scene_id}/refine", response_model=RefinementOut)
def refine_scene_content(
    adventure_id: str,
    scene_id: str,
    payload: RefineRequest,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(
        _lifecycle().refine_scene_content(
            db,
            adventure_id,
            scene_id,
            payload.instruction,
            actor_user_id,
            context=payload.context,
        )
    )


@router.patch("/adventures/{adventure_id}/scenes/{scene_id}", response_model=Scene)
def update_scene(
    adventure_id: str,
    scene_id: str,
    payload: dict[str, Any] = Body(...),
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().update_scene(db, adventure_id, scene_id, payload, actor_user_id))


@router.post("/adventures/{adventure_id}/scenes/{scene_id}/confirm", response_model=ConfirmationOut)
def confirm_scene(
    adventure_id: str,
    scene_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().confirm_scene(db, adventure_id, scene_id, actor_user_id))


@router.post("/adventures/{adventure_id}/scenes/{scene_id}/unconfirm", response_model=ConfirmationOut)
def unconfirm_scene(
    adventure_id: str,
    scene_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().unconfirm_scene(db, adventure_id, scene_id, actor_user_id))


@router.post("/adventures/{adventure_id}/ready", response_model=StateChangeOut)
def mark_ready(
    adventure_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().transition_to_ready(db, adventure_id, actor_user_id))


@router.post("/adventures/{adventure_id}/archive", response_model=StateChangeOut)
def archive_adventure(
    adventure_id: str,
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    return _unwrap(_lifecycle().archive_adventure(db, adventure_id, actor_user_id))


@router.get("/adventures/{adventure_id}/export")
def export_adventure(
    adventure_id: str,
    export_format: str = Query(default="markdown", alias="format"),
    actor_user_id: str | None = Depends(_actor_user_id),
    db: Session = Depends(get_db),
):
    exported = _unwrap(_lifecycle().export_adventure(db, adventure_id, export_format, actor_user_id))
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )
