"""
Cash register endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, status

from .auth import CreditSystem, get_actor, get_credit_system
from .schemas import ManualMovementRequest, SourceMovementRequest, SourceSyncRequest
from ..exceptions import ValidationError
from ..identity import Actor
from ..models import CashMovementType, SourceType


router = APIRouter()


def _source_type(value: str) -> SourceType:
    try:
        return SourceType(value.strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown source type: {value!r}", field="source_type")


def _movement_type(value: Optional[str], required: bool = False) -> Optional[CashMovementType]:
    if not value or not value.strip():
        if required:
            raise ValidationError("Movement type is required", field="movement_type")
        return None
    try:
        return CashMovementType(value.strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown movement type: {value!r}", field="movement_type")


@router.post("/inflows", status_code=status.HTTP_201_CREATED)
async def register_inflow(
    request: SourceMovementRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Find or create the inflow mirroring a source document"""
    async with system.storage.atomic():
        movement = await system.cash.register_inflow(
            _source_type(request.source_type), request.source_id, request.amount,
            movement_date=request.movement_date, concept=request.concept,
            payment_method_id=request.payment_method_id, operator_id=actor.user_id,
        )
    return movement.to_dict()


@router.post("/outflows", status_code=status.HTTP_201_CREATED)
async def register_outflow(
    request: SourceMovementRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Find or create the outflow mirroring a source document"""
    async with system.storage.atomic():
        movement = await system.cash.register_outflow(
            _source_type(request.source_type), request.source_id, request.amount,
            movement_date=request.movement_date, concept=request.concept,
            payment_method_id=request.payment_method_id, operator_id=actor.user_id,
        )
    return movement.to_dict()


@router.put("/sources")
async def update_from_source(
    request: SourceSyncRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Bring the row of a source document in line with its new amount"""
    source_type = _source_type(request.source_type)
    async with system.storage.atomic():
        movement = await system.cash.update_from_source(
            source_type, request.source_id,
            _movement_type(request.movement_type, required=True),
            request.amount, movement_date=request.movement_date, concept=request.concept,
            payment_method_id=request.payment_method_id, operator_id=actor.user_id,
            financed_capital=request.financed_capital,
            financed_installments=request.financed_installments,
        )
    return {
        "source_type": source_type.value,
        "source_id": request.source_id,
        "movement": movement.to_dict() if movement else None
    }


@router.delete("/sources/{source_type}/{source_id}")
async def delete_from_source(
    source_type: str,
    source_id: str,
    movement_type: Optional[str] = None,
    system: CreditSystem = Depends(get_credit_system),
):
    """Remove the rows mirroring a source document"""
    async with system.storage.atomic():
        removed = await system.cash.delete_from_source(
            _source_type(source_type), source_id, _movement_type(movement_type))
    return {
        "source_type": source_type,
        "source_id": source_id,
        "removed": removed
    }


@router.post("/movements", status_code=status.HTTP_201_CREATED)
async def record_movement(
    request: ManualMovementRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Record an adjustment, opening or closing entry"""
    async with system.storage.atomic():
        movement = await system.cash.record_movement(
            _movement_type(request.movement_type, required=True),
            request.amount, request.concept,
            movement_date=request.movement_date,
            payment_method_id=request.payment_method_id, operator_id=actor.user_id,
        )
    return movement.to_dict()


@router.get("/daily")
async def daily_totals(day: Optional[str] = None,
                       system: CreditSystem = Depends(get_credit_system)):
    totals = await system.cash.daily_totals(day)
    return totals.to_dict()


@router.get("/sources/{source_type}/{source_id}")
async def movements_for_source(source_type: str, source_id: str,
                               system: CreditSystem = Depends(get_credit_system)):
    movements = await system.cash.movements_for_source(_source_type(source_type), source_id)
    return {
        "source_type": source_type,
        "source_id": source_id,
        "movements": [m.to_dict() for m in movements]
    }
