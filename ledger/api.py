from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from rewards.engine import RewardsEngine
from rewards.models import (
    ChangePlanRequest,
    CoinWithdrawalRequest,
    CommissionSummary,
    CreatePromoRequest,
    EngagementResult,
    GiftRequest,
    GiftResult,
    PayableBalance,
    PayoutDecisionRequest,
    PayoutInfoRequest,
    PayoutInfoResult,
    PayoutRequest,
    PayoutResult,
    PromoCheckResult,
    PromoLink,
    PromoResult,
    ProrationQuote,
    PurchaseCoinsRequest,
    PurchaseResult,
    RecordEngagementRequest,
    RecordViewRequest,
    SubscriptionResult,
    ViewResult,
)

from .config import configure_logging
from .errors import ErrorCode, LedgerError
from .models import AccountRole, Currency, LedgerHistoryResponse, OperationResult, UserBalance
from .store import InMemoryStorage

configure_logging()

app = FastAPI(
    title="Coin Rewards API",
    description="Coin ledger with read earnings, gifts, affiliate commissions and payouts",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = RewardsEngine(storage=InMemoryStorage(seed_demo=True))

ERROR_STATUS = {
    ErrorCode.INSUFFICIENT_BALANCE: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.PAYMENT_FAILED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.MFA_REQUIRED: status.HTTP_403_FORBIDDEN,
    ErrorCode.PLAN_REQUIRED: status.HTTP_403_FORBIDDEN,
    ErrorCode.ACCOUNT_UNDER_REVIEW: status.HTTP_403_FORBIDDEN,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.DUPLICATE_PENDING: status.HTTP_409_CONFLICT,
    ErrorCode.CONCURRENT_MODIFICATION: status.HTTP_409_CONFLICT,
    ErrorCode.UNIQUE_VIOLATION: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
}


def http_error(code: Optional[ErrorCode], message: str) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST),
        detail={"error": code.value if code else None, "message": message},
    )


def unwrap(result: OperationResult):
    if not result.ok:
        raise http_error(result.error, result.message)
    return result


def current_account_id(x_account_id: UUID = Header(...)) -> UUID:
    """Identity is asserted by the gateway in front of this service."""
    try:
        engine.ledger.get_account(x_account_id)
    except LedgerError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown account")
    return x_account_id


def admin_account_id(account_id: UUID = Depends(current_account_id)) -> UUID:
    if engine.ledger.get_account(account_id).role != AccountRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return account_id


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "coin-rewards"}


# -- ledger ------------------------------------------------------------------

@app.get("/me/balance", response_model=UserBalance, tags=["Ledger"])
def get_my_balance(
    currency: Currency = Currency.COIN,
    account_id: UUID = Depends(current_account_id),
) -> UserBalance:
    return engine.ledger.get_balance(account_id, currency)


@app.get("/me/ledger", response_model=LedgerHistoryResponse, tags=["Ledger"])
def get_my_ledger(
    limit: int = 50,
    offset: int = 0,
    currency: Currency = Currency.COIN,
    account_id: UUID = Depends(current_account_id),
) -> LedgerHistoryResponse:
    return engine.ledger.get_ledger_history(account_id, limit, offset, currency)


# -- earning and coins -------------------------------------------------------

@app.post("/views", response_model=ViewResult, tags=["Earning"])
def record_view(request: RecordViewRequest, account_id: UUID = Depends(current_account_id)) -> ViewResult:
    return unwrap(engine.gate.record_view(account_id, request))


@app.post("/contents/{content_id}/engagements", response_model=EngagementResult, tags=["Earning"])
def record_engagement(
    content_id: int,
    request: RecordEngagementRequest,
    account_id: UUID = Depends(current_account_id),
) -> EngagementResult:
    return unwrap(engine.engagements.record(account_id, content_id, request.kind))


@app.post("/contents/{content_id}/gifts", response_model=GiftResult, tags=["Coins"])
def send_gift(content_id: int, request: GiftRequest, account_id: UUID = Depends(current_account_id)) -> GiftResult:
    return unwrap(engine.gifts.send_gift(account_id, content_id, request))


@app.post("/purchases", response_model=PurchaseResult, status_code=status.HTTP_201_CREATED, tags=["Coins"])
def purchase_coins(request: PurchaseCoinsRequest, account_id: UUID = Depends(current_account_id)) -> PurchaseResult:
    return unwrap(engine.purchases.purchase_coins(account_id, request.coins, request.price))


# -- promos and commission ---------------------------------------------------

@app.get("/promos/check", response_model=PromoCheckResult, tags=["Promos"])
def check_promo(code: str) -> PromoCheckResult:
    return engine.promos.check_promo(code)


@app.get("/promos", response_model=list[PromoLink], tags=["Promos"])
def list_my_promos(account_id: UUID = Depends(current_account_id)) -> list[PromoLink]:
    return engine.promos.list_links(account_id)


@app.post("/promos", response_model=PromoResult, status_code=status.HTTP_201_CREATED, tags=["Promos"])
def create_promo(request: CreatePromoRequest, account_id: UUID = Depends(current_account_id)) -> PromoResult:
    return unwrap(engine.promos.create_promo(account_id, request))


@app.post("/promos/{code}/redeem", response_model=PromoResult, tags=["Promos"])
def redeem_promo(code: str, account_id: UUID = Depends(current_account_id)) -> PromoResult:
    return unwrap(engine.promos.register_signup(account_id, code))


@app.get("/affiliate/commissions", response_model=CommissionSummary, tags=["Affiliate"])
def get_commissions(account_id: UUID = Depends(current_account_id)) -> CommissionSummary:
    return engine.commissions.summarize(account_id)


@app.get("/affiliate/balance", response_model=PayableBalance, tags=["Affiliate"])
def get_payable_balance(account_id: UUID = Depends(current_account_id)) -> PayableBalance:
    return engine.commissions.payable_balance(account_id)


# -- payouts -----------------------------------------------------------------

@app.get("/payouts", response_model=list[PayoutRequest], tags=["Payouts"])
def list_my_payouts(account_id: UUID = Depends(current_account_id)) -> list[PayoutRequest]:
    return engine.payouts.list_payouts(account_id)


@app.put("/me/payout-info", response_model=PayoutInfoResult, tags=["Payouts"])
def save_payout_info(request: PayoutInfoRequest, account_id: UUID = Depends(current_account_id)) -> PayoutInfoResult:
    return unwrap(engine.payouts.save_payout_info(account_id, request.iban, request.holder_name))


@app.post("/payouts/commission", response_model=PayoutResult, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_commission_payout(account_id: UUID = Depends(current_account_id)) -> PayoutResult:
    return unwrap(engine.payouts.request_commission_payout(account_id))


@app.post("/payouts/withdrawal", response_model=PayoutResult, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_coin_withdrawal(
    request: CoinWithdrawalRequest,
    account_id: UUID = Depends(current_account_id),
) -> PayoutResult:
    return unwrap(engine.payouts.request_coin_withdrawal(account_id, request.amount))


@app.post("/payouts/{payout_id}/approve", response_model=PayoutResult, tags=["Payouts"])
def approve_payout(
    payout_id: UUID,
    request: PayoutDecisionRequest,
    admin_id: UUID = Depends(admin_account_id),
) -> PayoutResult:
    return unwrap(engine.payouts.approve(payout_id, admin_id, request.admin_note))


@app.post("/payouts/{payout_id}/reject", response_model=PayoutResult, tags=["Payouts"])
def reject_payout(
    payout_id: UUID,
    request: PayoutDecisionRequest,
    admin_id: UUID = Depends(admin_account_id),
) -> PayoutResult:
    return unwrap(engine.payouts.reject(payout_id, admin_id, request.admin_note))


@app.post("/payouts/{payout_id}/cancel", response_model=PayoutResult, tags=["Payouts"])
def cancel_payout(payout_id: UUID, account_id: UUID = Depends(current_account_id)) -> PayoutResult:
    return unwrap(engine.payouts.cancel(payout_id, account_id))


# -- subscriptions -----------------------------------------------------------

@app.get("/subscriptions/quote", response_model=ProrationQuote, tags=["Subscriptions"])
def quote_plan(plan_id: str, account_id: UUID = Depends(current_account_id)) -> ProrationQuote:
    try:
        return engine.subscriptions.quote(account_id, plan_id)
    except LedgerError as e:
        raise http_error(e.code, str(e))


@app.post("/subscriptions", response_model=SubscriptionResult, tags=["Subscriptions"])
def change_plan(request: ChangePlanRequest, account_id: UUID = Depends(current_account_id)) -> SubscriptionResult:
    return unwrap(engine.subscriptions.subscribe(account_id, request.plan_id))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
