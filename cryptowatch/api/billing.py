"""
Billing API routes.

- GET  /api/subscription/plans            public plan list (alias /api/plans)
- POST /api/subscribe/stripe              card checkout
- POST /api/subscribe/crypto              hosted crypto charge
- POST /api/subscribe/wallet-payment      wallet payment quote
- GET  /api/subscribe/payment-status/{id} wallet quote status
- POST /api/verify-transaction            verify a wallet transaction
- GET  /api/subscription                  current plan/status
- GET|POST /api/subscribe/renewal-info    expiry and renewal options
- POST /api/subscribe/renew               manual renewal
- POST /api/subscribe/cancel              cancel current subscription

Crypto routes answer 404 unless SUPPORT_CRYPTO_PAYMENT is on. Handlers are
sync so FastAPI runs them in its threadpool; every request gets its own DB
session.
"""
from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from cryptowatch.core.auth import get_current_user_id
from cryptowatch.features.billing import service
from cryptowatch.features.plans.catalog import list_plans, plan_to_dict
from cryptowatch.models.subscription import Subscription


router = APIRouter(tags=["billing"])


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StripeCheckoutRequest(_Body):
    plan_id: str = Field(alias="planId")


class HostedChargeRequest(_Body):
    plan_id: str = Field(alias="planId")
    months: int = Field(default=1, ge=1, le=36)


class WalletPaymentRequest(_Body):
    plan_id: str = Field(alias="planId")
    network: str = "base"
    months: int = Field(default=1, ge=1, le=36)


class VerifyTransactionRequest(_Body):
    tx_hash: str = Field(alias="txHash", min_length=1)
    payment_id: str = Field(alias="paymentId", min_length=1)
    expected_amount: Optional[Union[float, str]] = Field(default=None, alias="expectedAmount")
    expected_to_address: Optional[str] = Field(default=None, alias="expectedToAddress")
    network: Optional[str] = None


class RenewRequest(_Body):
    plan_id: str = Field(alias="planId")
    months: int = Field(default=1, ge=1, le=36)
    network: str = "base"


def subscription_to_dict(sub: Optional[Subscription]) -> Optional[dict]:
    if sub is None:
        return None
    return {
        "id": sub.id,
        "plan": sub.plan_id,
        "status": sub.status.value,
        "paymentMethod": sub.payment_method.value,
        "currentPeriodStart": sub.current_period_start.isoformat() if sub.current_period_start else None,
        "currentPeriodEnd": sub.current_period_end.isoformat() if sub.current_period_end else None,
    }


@router.get("/api/subscription/plans")
@router.get("/api/plans")
def get_plans():
    """Public plan catalog."""
    return {"plans": [plan_to_dict(p) for p in list_plans()]}


@router.post("/api/subscribe/stripe")
def subscribe_stripe(body: StripeCheckoutRequest, user_id: str = Depends(get_current_user_id)):
    """
    Start a card subscription checkout.

    Errors:
        400: unknown or free plan
        503: Stripe not configured or unreachable
    """
    checkout = service.start_checkout(user_id, body.plan_id)
    return {"success": True, "url": checkout["url"], "sessionId": checkout["session_id"]}


@router.post("/api/subscribe/crypto")
def subscribe_crypto(body: HostedChargeRequest, user_id: str = Depends(get_current_user_id)):
    charge = service.start_hosted_charge(user_id, body.plan_id, body.months)
    return {"success": True, **charge}


@router.post("/api/subscribe/wallet-payment")
def create_wallet_payment(body: WalletPaymentRequest, user_id: str = Depends(get_current_user_id)):
    quote = service.create_wallet_payment(user_id, body.plan_id, body.months, body.network)
    return {"success": True, "payment": service.pending_payment_to_dict(quote)}


@router.get("/api/subscribe/payment-status/{payment_id}")
def payment_status(payment_id: str, user_id: str = Depends(get_current_user_id)):
    service.require_crypto_enabled()
    return service.get_payment_status(user_id, payment_id)


@router.post("/api/verify-transaction")
def verify_transaction(body: VerifyTransactionRequest, user_id: str = Depends(get_current_user_id)):
    """
    Verify a wallet payment.

    Mismatches (wrong amount, recipient, unknown tx...) are a 200 with
    success=false and an error code; an already-processed payment is a 200
    with success=true and alreadyProcessed=true. Chain outages are 503.
    """
    result = service.verify_transaction(
        user_id,
        body.payment_id,
        body.tx_hash,
        expected_amount=body.expected_amount,
        expected_to=body.expected_to_address,
        network=body.network,
    )
    if not result.success:
        return {"success": False, "error": result.error, "message": result.message}
    return {
        "success": True,
        "alreadyProcessed": result.already_processed,
        "message": result.message or "Payment verified",
        "subscription": subscription_to_dict(result.subscription),
    }


@router.get("/api/subscription")
def get_subscription(user_id: str = Depends(get_current_user_id)):
    return service.get_subscription_status(user_id)


@router.get("/api/subscribe/renewal-info")
@router.post("/api/subscribe/renewal-info")
def renewal_info(user_id: str = Depends(get_current_user_id)):
    return service.get_user_renewal_info(user_id)


@router.post("/api/subscribe/renew")
def renew(body: RenewRequest, user_id: str = Depends(get_current_user_id)):
    result = service.renew_subscription(user_id, body.plan_id, body.months, body.network)
    return {"success": True, **result}


@router.post("/api/subscribe/cancel")
def cancel(user_id: str = Depends(get_current_user_id)):
    return service.cancel_subscription(user_id)
