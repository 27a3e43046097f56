"""
Credit endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import CreditSystem, get_actor, get_credit_system
from .schemas import (
    CreateCreditRequest, InstallmentPaymentRequest, RefinanceCreditRequest,
    SettleCreditRequest, SimulatePlanRequest, UpdateCreditRequest,
)
from ..identity import Actor


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_credit(
    request: CreateCreditRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Originate a credit with its schedule and disbursement"""
    credit_id = await system.credit_service.create_credit(request.model_dump(), actor=actor)
    return {
        "credit_id": credit_id,
        "message": "Credit created successfully"
    }


@router.post("/simulate")
async def simulate_plan(request: SimulatePlanRequest,
                        system: CreditSystem = Depends(get_credit_system)):
    """Quote a plan without persisting anything"""
    quote = system.credit_service.simulate_plan(request.model_dump())
    return quote.to_dict()


@router.get("/borrower/{borrower_id}")
async def list_borrower_credits(borrower_id: str,
                                system: CreditSystem = Depends(get_credit_system)):
    credits = await system.credit_service.credits_for_borrower(borrower_id)
    return {
        "borrower_id": borrower_id,
        "credits": [credit.to_dict() for credit in credits]
    }


@router.get("/{credit_id}")
async def get_credit(credit_id: str, system: CreditSystem = Depends(get_credit_system)):
    """Get a credit with today's late fees and status"""
    snapshot = await system.credit_service.get_credit(credit_id)
    return snapshot.to_dict()


@router.patch("/{credit_id}")
async def update_credit(
    credit_id: str,
    request: UpdateCreditRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Change the terms of a credit with no payments"""
    snapshot = await system.credit_service.update_credit(credit_id, request.changes(), actor=actor)
    return snapshot.to_dict()


@router.post("/{credit_id}/settle")
async def settle_credit(
    credit_id: str,
    request: SettleCreditRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Pay off the whole credit, optionally with a discount"""
    summary = await system.credit_service.settle_credit(
        credit_id,
        request.payment_method_id,
        actor=actor,
        discount_pct=request.discount_pct,
        discount_base=request.discount_base,
        note=request.note,
    )
    return summary.to_dict()


@router.post("/{credit_id}/refinance", status_code=status.HTTP_201_CREATED)
async def refinance_credit(
    credit_id: str,
    request: RefinanceCreditRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Replace the outstanding exposure with a new fixed credit"""
    result = await system.credit_service.refinance_credit(
        credit_id,
        request.option,
        actor=actor,
        manual_rate=request.manual_rate,
        installment_count=request.installment_count,
        period=request.period,
    )
    return result.to_dict()


@router.post("/{credit_id}/void")
async def void_credit(credit_id: str,
                      system: CreditSystem = Depends(get_credit_system),
                      actor: Actor = Depends(get_actor)):
    snapshot = await system.credit_service.void_credit(credit_id, actor=actor)
    return snapshot.to_dict()


@router.delete("/{credit_id}")
async def delete_credit(credit_id: str,
                        system: CreditSystem = Depends(get_credit_system),
                        actor: Actor = Depends(get_actor)):
    await system.credit_service.delete_credit(credit_id, actor=actor)
    return {
        "credit_id": credit_id,
        "message": "Credit deleted successfully"
    }


@router.post("/installments/{installment_id}/payments", status_code=status.HTTP_201_CREATED)
async def pay_installment(
    installment_id: str,
    request: InstallmentPaymentRequest,
    system: CreditSystem = Depends(get_credit_system),
    actor: Actor = Depends(get_actor),
):
    """Register a payment against an installment"""
    result = await system.credit_service.payments.pay_installment(
        installment_id,
        request.payment_method_id,
        amount=request.amount,
        actor=actor,
        late_fee_discount=request.late_fee_discount,
        note=request.note,
        cycle=request.cycle,
    )
    return result.to_dict()
