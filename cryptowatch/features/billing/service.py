"""
Billing service orchestrator.

Coordinates the gateway adapters, wallet verification and the reconciler
for the REST layer:
- customer management and checkout (Stripe)
- hosted crypto charges
- wallet quotes and transaction verification
- subscription status, renewal info, renewal and cancellation
- webhook intake

Gateway-specific code lives in stripe_provider.py / coinbase_provider.py /
chain.py; state transitions live in reconciler.py.
"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Mapping

import httpx

from cryptowatch.core.config import settings
from cryptowatch.core.database import get_db_session
from cryptowatch.core.errors import (
    CryptoPaymentsDisabledError,
    InvalidSignatureError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from cryptowatch.core.logging import LOGGER_NAME, log_event
from cryptowatch.features.billing import reconciler, store, wallet
from cryptowatch.features.billing.chain import ChainVerifier
from cryptowatch.features.billing.coinbase_provider import (
    SIGNATURE_HEADER as COINBASE_SIGNATURE_HEADER,
    CoinbaseCommerceProvider,
)
from cryptowatch.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    ChainUnavailableError,
)
from cryptowatch.features.billing.renewal import get_renewal_info, is_expired, needs_renewal, days_until_expiry
from cryptowatch.features.billing.stripe_provider import StripeProvider
from cryptowatch.features.billing.webhook_router import WebhookOutcome, handle_gateway_webhook
from cryptowatch.features.plans.catalog import FREE_PLAN_ID, get_paid_plan, get_plan, quote_price
from cryptowatch.models.subscription import PaymentMethod, PendingPayment, SubscriptionStatus

logger = logging.getLogger(LOGGER_NAME)

WALLET_NETWORKS = ("base", "solana")
CARD_ALIASES = ("card", "stripe")
HOSTED_ALIASES = ("hosted", "coinbase", "hosted_crypto")

_http_client: Optional[httpx.Client] = None


def _get_http_client() -> httpx.Client:
    global _http_client
    if _http_client is None:
        _http_client = httpx.Client(timeout=settings.CHAIN_HTTP_TIMEOUT_SECONDS)
    return _http_client


def billing_enabled() -> bool:
    """Card billing is available when a Stripe key for this environment is configured."""
    return bool(settings.stripe_secret_key)


def crypto_enabled() -> bool:
    return bool(settings.SUPPORT_CRYPTO_PAYMENT)


def require_crypto_enabled() -> None:
    if not crypto_enabled():
        raise CryptoPaymentsDisabledError()


def get_provider() -> Optional[StripeProvider]:
    """Stripe gateway for this environment, or None if billing is disabled."""
    if not billing_enabled():
        return None
    frontend = settings.FRONTEND_URL.rstrip("/")
    return StripeProvider(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        success_url=f"{frontend}/app/subscription?success=true",
        cancel_url=f"{frontend}/app/subscription?canceled=true",
    )


def get_hosted_charge_provider() -> Optional[CoinbaseCommerceProvider]:
    if not settings.COINBASE_COMMERCE_API_KEY:
        return None
    frontend = settings.FRONTEND_URL.rstrip("/")
    return CoinbaseCommerceProvider(
        http=_get_http_client(),
        api_key=settings.COINBASE_COMMERCE_API_KEY,
        webhook_secret=settings.COINBASE_COMMERCE_WEBHOOK_SECRET,
        api_url=settings.COINBASE_COMMERCE_API_URL,
        redirect_url=f"{frontend}/app/subscription?success=true",
        cancel_url=f"{frontend}/app/subscription?canceled=true",
    )


def get_chain_reader() -> ChainVerifier:
    return ChainVerifier(
        http=_get_http_client(),
        rpc_urls={"base": settings.BASE_RPC_URL, "solana": settings.SOLANA_RPC_URL},
        usdc_tokens={"base": settings.BASE_USDC_CONTRACT, "solana": settings.SOLANA_USDC_MINT},
    )


def _require_provider() -> StripeProvider:
    provider = get_provider()
    if provider is None:
        raise UpstreamUnavailableError("Card payments are not configured", code="billing_disabled")
    return provider


def ensure_customer_for_user(user_id: str, provider: Optional[StripeProvider] = None) -> str:
    """
    Return the user's gateway customer id, creating it on first use.

    The stored id is re-read right before calling the gateway and persisted
    with a conditional update, so concurrent first checkouts converge on one
    stored customer (the gateway idempotency key makes both calls return
    the same customer in the common case).

    Raises:
        NotFoundError: unknown user
        UpstreamUnavailableError: gateway call failed
    """
    with get_db_session() as session:
        user = store.get_user_by_id(session, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    if user.payment_gateway_customer_id:
        return user.payment_gateway_customer_id

    gateway = provider or _require_provider()
    try:
        customer_id = gateway.create_customer(user_id, user.email)
    except BillingProviderError as e:
        raise UpstreamUnavailableError(str(e))

    with get_db_session() as session:
        stored = store.set_customer_id_if_absent(session, user_id, customer_id)
        if stored:
            return customer_id
        winner = store.get_user_by_id(session, user_id)
    logger.info("billing.customer.race_lost", extra={"user_id": user_id})
    return winner.payment_gateway_customer_id


def start_checkout(user_id: str, plan_id: str, *, now: Optional[datetime] = None) -> Dict[str, str]:
    """
    Start a Stripe subscription checkout and record the pending subscription.

    Returns:
        {"url": ..., "session_id": ...}
    """
    plan = get_paid_plan(plan_id)
    provider = _require_provider()
    customer_id = ensure_customer_for_user(user_id, provider)
    try:
        session_info = provider.create_checkout_session(customer_id, plan, user_id)
    except BillingProviderError as e:
        raise UpstreamUnavailableError(str(e))

    with get_db_session() as session:
        store.insert_subscription(
            session,
            user_id=user_id,
            plan_id=plan.plan_id,
            status=SubscriptionStatus.PENDING,
            payment_method=PaymentMethod.CARD.value,
            payment_reference=session_info.session_id,
            now=now,
        )

    log_event("info", "billing.checkout.started", user_id=user_id, extra={"plan_id": plan.plan_id, "session_id": session_info.session_id})
    return {"url": session_info.url, "session_id": session_info.session_id}


def start_hosted_charge(user_id: str, plan_id: str, months: int = 1, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Create a hosted crypto charge and record the pending subscription keyed by its code."""
    require_crypto_enabled()
    plan = get_paid_plan(plan_id)
    provider = get_hosted_charge_provider()
    if provider is None:
        raise UpstreamUnavailableError("Hosted crypto payments are not configured", code="billing_disabled")
    amount = quote_price(plan, months)
    try:
        charge = provider.create_charge(user_id, plan, months, amount)
    except BillingProviderError as e:
        raise UpstreamUnavailableError(str(e))

    with get_db_session() as session:
        store.insert_subscription(
            session,
            user_id=user_id,
            plan_id=plan.plan_id,
            status=SubscriptionStatus.PENDING,
            payment_method=PaymentMethod.HOSTED_CRYPTO.value,
            payment_reference=charge.code,
            now=now,
        )
    return {
        "chargeId": charge.charge_id,
        "code": charge.code,
        "url": charge.hosted_url,
        "amount": float(amount),
        "currency": "USD",
        "expiresAt": charge.expires_at.isoformat() if charge.expires_at else None,
    }


def create_wallet_payment(
    user_id: str,
    plan_id: str,
    months: int,
    network: str,
    *,
    is_renewal: bool = False,
    now: Optional[datetime] = None,
) -> PendingPayment:
    require_crypto_enabled()
    return wallet.quote_wallet_payment(user_id, plan_id, months, network, is_renewal=is_renewal, now=now)


def _cross_check(quote: PendingPayment, expected_amount, expected_to: Optional[str], network: Optional[str]) -> None:
    """Client-echoed quote values must agree with the stored quote; they are never used otherwise."""
    if network is not None and network != quote.network:
        raise ValidationError("network does not match the payment quote", code="quote_mismatch")
    if expected_to is not None and expected_to.casefold() != quote.deposit_address.casefold():
        raise ValidationError("expectedToAddress does not match the payment quote", code="quote_mismatch")
    if expected_amount is not None:
        try:
            amount = Decimal(str(expected_amount))
        except InvalidOperation:
            raise ValidationError("expectedAmount must be a number")
        if abs(amount - quote.expected_amount) > Decimal(str(settings.AMOUNT_TOLERANCE)):
            raise ValidationError("expectedAmount does not match the payment quote", code="quote_mismatch")


def verify_transaction(
    user_id: str,
    payment_id: str,
    tx_hash: str,
    *,
    expected_amount=None,
    expected_to: Optional[str] = None,
    network: Optional[str] = None,
    now: Optional[datetime] = None,
) -> wallet.WalletVerification:
    """
    Verify a wallet payment for the authenticated user.

    Raises:
        CryptoPaymentsDisabledError, ValidationError (quote_mismatch),
        UpstreamUnavailableError (chain RPC down)
    """
    require_crypto_enabled()
    quote = wallet.get_quote(payment_id, user_id)
    if quote is not None:
        _cross_check(quote, expected_amount, expected_to, network)

    try:
        result = wallet.verify_wallet_payment(
            payment_id,
            tx_hash,
            chain=get_chain_reader(),
            user_id=user_id,
            now=now,
        )
    except ChainUnavailableError as e:
        raise UpstreamUnavailableError(str(e))

    if result.success and result.superseded:
        reconciler.release_superseded(
            reconciler.Activation(subscription=result.subscription, created=True, superseded=result.superseded),
            get_provider(),
        )
    return result


def get_payment_status(user_id: str, payment_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    quote = wallet.get_quote(payment_id, user_id)
    if quote is None:
        raise NotFoundError("Payment not found")
    ts = now or store.utcnow()
    status = quote.status.value
    if status == "pending" and quote.is_expired(ts):
        status = "expired"
    return {"paymentId": quote.payment_id, "status": status, "txHash": quote.tx_hash, "expiresAt": quote.expires_at.isoformat()}


def _current_with_lazy_expiry(user_id: str, now: datetime):
    with get_db_session() as session:
        current = store.get_current_subscription(session, user_id)
    if current is not None and current.status == SubscriptionStatus.ACTIVE and is_expired(current, now):
        current = reconciler.expire_subscription(current, now=now)
    return current


def get_subscription_status(user_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    The user's effective plan.

    Only an active (or past_due, still in grace) subscription grants a paid
    plan; otherwise the user is on the free plan and the lapsed record is
    described in expiredPlan/expiredAt.
    """
    ts = now or store.utcnow()
    current = _current_with_lazy_expiry(user_id, ts)

    if current is None or current.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        free = get_plan(FREE_PLAN_ID)
        lapsed = current if current is not None and current.status == SubscriptionStatus.EXPIRED else None
        return {
            "plan": free.plan_id,
            "status": current.status.value if current is not None else "inactive",
            "planName": free.name,
            "features": sorted(free.entitlements),
            "currentPeriodEnd": None,
            "paymentMethod": None,
            "needsRenewal": lapsed is not None,
            "expiredPlan": lapsed.plan_id if lapsed else None,
            "expiredAt": lapsed.current_period_end.isoformat() if lapsed and lapsed.current_period_end else None,
            "daysUntilExpiry": 0,
        }

    plan = get_plan(current.plan_id)
    return {
        "plan": plan.plan_id,
        "status": current.status.value,
        "planName": plan.name,
        "features": sorted(plan.entitlements),
        "currentPeriodEnd": current.current_period_end.isoformat() if current.current_period_end else None,
        "paymentMethod": current.payment_method.value,
        "needsRenewal": needs_renewal(current, ts),
        "expiredPlan": None,
        "expiredAt": None,
        "daysUntilExpiry": days_until_expiry(current.current_period_end, ts),
    }


def get_user_renewal_info(user_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    ts = now or store.utcnow()
    current = _current_with_lazy_expiry(user_id, ts)
    return get_renewal_info(current, ts).to_dict()


def renew_subscription(user_id: str, plan_id: str, months: int, network: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Manual renewal. Wallet networks get a renewal quote; card and hosted
    renewals go through a fresh checkout. Activation follows the normal
    path, so the renewed record supersedes the current one.
    """
    get_paid_plan(plan_id)
    if network in WALLET_NETWORKS:
        quote = create_wallet_payment(user_id, plan_id, months, network, is_renewal=True, now=now)
        return {"method": "direct_wallet", "payment": pending_payment_to_dict(quote)}
    if network in CARD_ALIASES:
        checkout = start_checkout(user_id, plan_id, now=now)
        return {"method": "card", "url": checkout["url"], "sessionId": checkout["session_id"]}
    if network in HOSTED_ALIASES:
        charge = start_hosted_charge(user_id, plan_id, months, now=now)
        return {"method": "hosted_crypto", **charge}
    raise ValidationError(f"Unsupported network: {network}")


def cancel_subscription(user_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    try:
        sub = reconciler.cancel_by_user(user_id, get_provider(), now=now)
    except BillingProviderError as e:
        raise UpstreamUnavailableError(str(e))
    return {"success": True, "subscriptionId": sub.id, "status": sub.status.value}


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def process_webhook(gateway: str, headers: Mapping[str, str], body: bytes, *, now: Optional[datetime] = None) -> WebhookOutcome:
    """
    Verify and route one webhook delivery.

    Raises:
        NotFoundError: unknown or unconfigured gateway
        InvalidSignatureError: signature missing/invalid (the only non-2xx outcome)
    """
    card_gateway = get_provider()
    if gateway == "stripe":
        verifier = card_gateway
        signature = _header(headers, "stripe-signature")
    elif gateway == "coinbase":
        verifier = get_hosted_charge_provider()
        signature = _header(headers, COINBASE_SIGNATURE_HEADER)
    else:
        raise NotFoundError(f"Unknown webhook gateway: {gateway}")
    if verifier is None:
        raise NotFoundError(f"Webhook gateway {gateway} is not configured")

    try:
        event = verifier.construct_event(body, signature)
    except BillingWebhookError as e:
        logger.warning("billing.webhook.rejected", extra={"gateway": gateway, "reason": str(e)})
        raise InvalidSignatureError(str(e))

    return handle_gateway_webhook(event, raw_body=body, card_gateway=card_gateway, now=now)


def pending_payment_to_dict(quote: PendingPayment) -> Dict[str, Any]:
    return {
        "paymentId": quote.payment_id,
        "planId": quote.plan_id,
        "months": quote.months,
        "network": quote.network,
        "currency": quote.currency,
        "amount": float(quote.expected_amount),
        "discount": float(quote.discount),
        "toAddress": quote.deposit_address,
        "isRenewal": quote.is_renewal,
        "status": quote.status.value,
        "expiresAt": quote.expires_at.isoformat(),
    }
