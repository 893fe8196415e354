from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from marketplace.core.clock import as_utc
from marketplace.deps import get_points_ledger, raise_for_failure
from marketplace.models.points import PointsTransaction, Referral
from marketplace.services.points_ledger import PointsLedger

router = APIRouter(prefix="/api/points", tags=["points"])


def _transaction_to_dict(tx: PointsTransaction) -> Dict[str, Any]:
    created_at = as_utc(tx.created_at)
    return {
        "id": tx.id,
        "customer_id": tx.customer_id,
        "order_id": tx.order_id,
        "type": tx.type,
        "points": tx.points,
        "balance_after": tx.balance_after,
        "sequence": tx.sequence,
        "description": tx.description,
        "created_at": created_at.isoformat() if created_at else None,
    }


def _referral_to_dict(referral: Referral) -> Dict[str, Any]:
    awarded_at = as_utc(referral.bonus_awarded_at)
    return {
        "id": referral.id,
        "referrer_id": referral.referrer_id,
        "referred_customer_id": referral.referred_customer_id,
        "bonus_awarded_at": awarded_at.isoformat() if awarded_at else None,
    }


@router.get("/{customer_id}")
def get_points(customer_id: int, ledger: PointsLedger = Depends(get_points_ledger)):
    balance, history = raise_for_failure(ledger.statement(customer_id))
    return {
        "customer_id": customer_id,
        "balance": balance,
        "history": [_transaction_to_dict(tx) for tx in history],
    }


class PointsAdjustment(BaseModel):
    points: int
    reason: str = Field(..., min_length=1)


@router.post("/{customer_id}/adjust")
def adjust_points(customer_id: int, body: PointsAdjustment, ledger: PointsLedger = Depends(get_points_ledger)):
    tx = raise_for_failure(ledger.adjust(customer_id, body.points, body.reason))
    return _transaction_to_dict(tx)


class ReferralCreate(BaseModel):
    referrer_id: int
    referred_customer_id: int


@router.post("/referrals")
def create_referral(body: ReferralCreate, ledger: PointsLedger = Depends(get_points_ledger)):
    referral = raise_for_failure(ledger.register_referral(body.referrer_id, body.referred_customer_id))
    return _referral_to_dict(referral)
