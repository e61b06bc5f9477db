"""
Direct wallet payments: quote, then verify a submitted transaction hash.

The quote fixes everything that matters (amount, asset, network, deposit
address, expiry) server-side; verification compares chain state against the
quote, never against client-supplied values.

Verification checks, in order:
    quote_not_found        unknown id, someone else's quote, or expired unpaid quote
    transaction_not_found  the chain does not know the hash
    transaction_not_confirmed / transaction_failed / transaction_too_old
    amount_mismatch        wrong asset, or amount off by more than the tolerance
    wrong_recipient        funds went somewhere other than the deposit address
    already processed      hash or quote already used (reported as success)
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from cryptowatch.core.config import settings
from cryptowatch.core.database import get_db_session
from cryptowatch.core.errors import ValidationError
from cryptowatch.core.logging import log_event
from cryptowatch.features.billing import reconciler, store
from cryptowatch.features.billing.chain import SUPPORTED_NETWORKS
from cryptowatch.features.billing.notifications import Notifier
from cryptowatch.features.billing.provider import ChainReader
from cryptowatch.features.plans.catalog import get_paid_plan, multi_month_discount, period_length_days, quote_price
from cryptowatch.models.subscription import (
    PaymentMethod,
    PendingPayment,
    QuoteStatus,
    Subscription,
    SubscriptionStatus,
)

QUOTE_CURRENCY = "USDC"

# Chain clocks and ours disagree a little; allow this much before the quote
TX_TIME_SKEW = timedelta(minutes=5)

QUOTE_NOT_FOUND = "quote_not_found"
TRANSACTION_NOT_FOUND = "transaction_not_found"
TRANSACTION_NOT_CONFIRMED = "transaction_not_confirmed"
TRANSACTION_FAILED = "transaction_failed"
TRANSACTION_TOO_OLD = "transaction_too_old"
AMOUNT_MISMATCH = "amount_mismatch"
WRONG_RECIPIENT = "wrong_recipient"

_MESSAGES = {
    QUOTE_NOT_FOUND: "Payment quote not found or expired",
    TRANSACTION_NOT_FOUND: "Transaction not found on chain",
    TRANSACTION_NOT_CONFIRMED: "Transaction is not confirmed yet; try again shortly",
    TRANSACTION_FAILED: "Transaction failed on chain",
    TRANSACTION_TOO_OLD: "Transaction predates this payment quote",
    AMOUNT_MISMATCH: "Transferred amount does not match the quote",
    WRONG_RECIPIENT: "Funds were not sent to the payment address",
}


@dataclass
class WalletVerification:
    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    already_processed: bool = False
    subscription: Optional[Subscription] = None
    superseded: List[Subscription] = field(default_factory=list)

    @classmethod
    def failed(cls, error: str) -> "WalletVerification":
        return cls(success=False, error=error, message=_MESSAGES[error])


def deposit_address_for(network: str) -> str:
    addresses = {
        "base": settings.BASE_WALLET_ADDRESS,
        "solana": settings.SOLANA_WALLET_ADDRESS,
    }
    if network not in SUPPORTED_NETWORKS:
        raise ValidationError(f"Unsupported network: {network}")
    address = addresses.get(network)
    if not address:
        raise ValidationError(f"Wallet payments on {network} are not configured")
    return address


def normalize_tx_hash(network: str, tx_hash: str) -> str:
    """EVM hashes are hex (case-insensitive); Solana signatures are base58 (case-sensitive)."""
    value = (tx_hash or "").strip()
    if not value:
        raise ValidationError("txHash is required")
    return value.lower() if network == "base" else value


def quote_wallet_payment(
    user_id: str,
    plan_id: str,
    months: int = 1,
    network: str = "base",
    *,
    is_renewal: bool = False,
    now: Optional[datetime] = None,
) -> PendingPayment:
    """
    Create a wallet payment quote and the pending subscription row it will promote.

    Raises:
        ValidationError: unknown/free plan, bad months, unsupported or unconfigured network
    """
    plan = get_paid_plan(plan_id)
    deposit_address = deposit_address_for(network)
    amount = quote_price(plan, months, crypto=True)
    ts = now or store.utcnow()

    quote = PendingPayment(
        payment_id=str(uuid4()),
        user_id=user_id,
        plan_id=plan.plan_id,
        months=months,
        network=network,
        currency=QUOTE_CURRENCY,
        expected_amount=amount,
        discount=multi_month_discount(months),
        deposit_address=deposit_address,
        is_renewal=is_renewal,
        status=QuoteStatus.PENDING,
        created_at=ts,
        expires_at=ts + timedelta(minutes=settings.WALLET_QUOTE_TTL_MINUTES),
    )
    with get_db_session() as session:
        store.insert_pending_payment(session, quote)
        store.insert_subscription(
            session,
            user_id=user_id,
            plan_id=plan.plan_id,
            status=SubscriptionStatus.PENDING,
            payment_method=PaymentMethod.DIRECT_WALLET.value,
            payment_reference=quote.payment_id,
            now=ts,
        )

    log_event(
        "info",
        "wallet.quote.created",
        user_id=user_id,
        extra={"payment_id": quote.payment_id, "network": network, "amount": str(amount), "months": months},
    )
    return quote


def get_quote(payment_id: str, user_id: Optional[str] = None) -> Optional[PendingPayment]:
    with get_db_session() as session:
        quote = store.get_pending_payment(session, payment_id)
    if quote is None or (user_id is not None and quote.user_id != user_id):
        return None
    return quote


def verify_wallet_payment(
    payment_id: str,
    tx_hash: str,
    *,
    chain: ChainReader,
    user_id: Optional[str] = None,
    tolerance: Optional[Decimal] = None,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
) -> WalletVerification:
    """
    Verify an on-chain payment against its quote and activate the subscription.

    Mismatches come back as WalletVerification(success=False, error=...);
    chain outages raise ChainUnavailableError so the caller can answer 503.
    """
    ts = now or store.utcnow()
    eps = tolerance if tolerance is not None else Decimal(str(settings.AMOUNT_TOLERANCE))

    quote = get_quote(payment_id, user_id)
    if quote is None or quote.status == QuoteStatus.EXPIRED:
        return _fail(QUOTE_NOT_FOUND, payment_id, user_id)
    if quote.status == QuoteStatus.PENDING and quote.is_expired(ts):
        return _fail(QUOTE_NOT_FOUND, payment_id, user_id)

    tx = normalize_tx_hash(quote.network, tx_hash)
    transfer = chain.get_transfer(quote.network, tx)
    if transfer is None:
        return _fail(TRANSACTION_NOT_FOUND, payment_id, quote.user_id)
    if not transfer.confirmed:
        return _fail(TRANSACTION_NOT_CONFIRMED, payment_id, quote.user_id)
    if not transfer.succeeded:
        return _fail(TRANSACTION_FAILED, payment_id, quote.user_id)
    if transfer.block_time and transfer.block_time < quote.created_at - TX_TIME_SKEW:
        return _fail(TRANSACTION_TOO_OLD, payment_id, quote.user_id)

    if transfer.asset != quote.currency or abs(transfer.amount - quote.expected_amount) > eps:
        return _fail(
            AMOUNT_MISMATCH, payment_id, quote.user_id,
            expected=str(quote.expected_amount), actual=f"{transfer.amount} {transfer.asset}",
        )
    if (transfer.to_address or "").casefold() != quote.deposit_address.casefold():
        return _fail(WRONG_RECIPIENT, payment_id, quote.user_id)

    with get_db_session() as session:
        used = store.get_subscription_by_reference(session, tx)
        used_by_quote = store.get_pending_payment_by_tx(session, tx)
    if used or used_by_quote or quote.status == QuoteStatus.CONSUMED:
        return _already_processed(quote, used)

    activation = reconciler.activate_subscription(
        quote.user_id,
        quote.plan_id,
        PaymentMethod.DIRECT_WALLET,
        tx,
        period_length_days(quote.months),
        pending_reference=quote.payment_id,
        now=ts,
        notifier=notifier,
    )
    if not activation.created:
        return _already_processed(quote, activation.subscription)

    with get_db_session() as session:
        store.consume_pending_payment(session, quote.payment_id, tx)

    log_event(
        "info",
        "wallet.verify.succeeded",
        user_id=quote.user_id,
        subscription_id=activation.subscription.id,
        extra={"payment_id": payment_id, "network": quote.network, "tx_hash": tx},
    )
    return WalletVerification(success=True, subscription=activation.subscription, superseded=activation.superseded)


def _fail(error: str, payment_id: str, user_id: Optional[str], **extra) -> WalletVerification:
    log_event(
        "warning",
        "wallet.verify.failed",
        user_id=user_id,
        error_code=error,
        extra={"payment_id": payment_id, **extra},
    )
    return WalletVerification.failed(error)


def _already_processed(quote: PendingPayment, subscription: Optional[Subscription]) -> WalletVerification:
    log_event("info", "wallet.verify.already_processed", user_id=quote.user_id, extra={"payment_id": quote.payment_id})
    return WalletVerification(
        success=True,
        already_processed=True,
        message="Payment already processed",
        subscription=subscription,
    )
