"""
HTTP surface over the funding engine.
Every route delegates to one engine operation; engine errors are mapped to
status codes by a single exception handler.
"""

from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse

from .schemas import (
    VaultCreateRequest,
    InvestRequest,
    CloseVaultRequest,
    ClaimRequest,
    ScheduleCreateRequest,
    UpkeepRequest,
    PriceObserveRequest,
    LotteryEnterRequest,
    LotteryResolveRequest,
    VaultResponse,
    VaultListResponse,
    PositionResponse,
    PositionListResponse,
    DepositResponse,
    CapacityResponse,
    ScheduleResponse,
    ScheduleStatusResponse,
    ActiveSchedulesResponse,
    PaymentResponse,
    PaymentListResponse,
    UpkeepCheckResponse,
    UpkeepPerformResponse,
    VaultUpkeepResponse,
    PriceStateResponse,
    SimulateResponse,
    FeedInfoResponse,
    LotteryRoundResponse,
    ParticipantsResponse,
    EligibilityResponse,
    EventResponse,
    EventListResponse,
    HealthResponse,
)
from ..core import keeper
from ..core.config import VERSION, debug_enabled
from ..core.engine import FundingEngine
from ..core.errors import (
    CapacityExceeded,
    InvalidInput,
    InvalidStateTransition,
    StalePrecondition,
    UnknownEntity,
    VaultEngineError,
)
from ..core.schema import VaultStatus
from ..util.logging import logger

app = FastAPI(
    title="Vault Funding API",
    version=VERSION,
    description="Vault funding, price-scaled investment, automated repayment and fair selection rounds",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

_engine: Optional[FundingEngine] = None


def get_engine() -> FundingEngine:
    """Process-wide engine, built from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = FundingEngine()
    return _engine


def status_code_for(error: VaultEngineError) -> int:
    if isinstance(error, InvalidInput):
        return 400
    if isinstance(error, UnknownEntity):
        return 404
    if isinstance(error, (CapacityExceeded, InvalidStateTransition, StalePrecondition)):
        return 409
    return 400


@app.exception_handler(VaultEngineError)
async def engine_error_handler(request: Request, exc: VaultEngineError):
    logger.debug(f"{request.method} {request.url.path} -> {exc.error_type}: {exc.message}")
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_dict())


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(engine: FundingEngine = Depends(get_engine)):
    """Check system health."""
    db_health = engine.health()
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        network_id=engine.config.network_id
    )


# Vaults

@app.post("/vaults", response_model=VaultResponse)
def create_vault_endpoint(request: VaultCreateRequest, engine: FundingEngine = Depends(get_engine)):
    vault = engine.vaults.create_vault(
        beneficiary=request.beneficiary,
        target_amount=request.target_amount,
        metadata=request.metadata,
        study_duration=request.study_duration
    )
    return VaultResponse.model_validate(vault)


@app.get("/vaults", response_model=VaultListResponse)
def list_vaults_endpoint(status: Optional[VaultStatus] = None, engine: FundingEngine = Depends(get_engine)):
    vaults = engine.vaults.list_vaults(status)
    return VaultListResponse(vaults=[VaultResponse.model_validate(v) for v in vaults])


@app.get("/vaults/{vault_id}", response_model=VaultResponse)
def get_vault_endpoint(vault_id: int, engine: FundingEngine = Depends(get_engine)):
    return VaultResponse.model_validate(engine.vaults.get_vault(vault_id))


@app.post("/vaults/{vault_id}/invest", response_model=DepositResponse)
def invest_endpoint(vault_id: int, request: InvestRequest, engine: FundingEngine = Depends(get_engine)):
    """Scale the requested amount by the current multiplier and credit it."""
    result = engine.vaults.invest(vault_id, request.investor, request.amount)
    return DepositResponse(
        vault=VaultResponse.model_validate(result.vault),
        position=PositionResponse.model_validate(result.position),
        requested_amount=result.requested_amount,
        credited_amount=result.credited_amount,
        multiplier=result.multiplier
    )


@app.post("/vaults/{vault_id}/close", response_model=VaultResponse)
def close_vault_endpoint(vault_id: int, request: CloseVaultRequest = CloseVaultRequest(),
                         engine: FundingEngine = Depends(get_engine)):
    return VaultResponse.model_validate(engine.vaults.close_vault(vault_id, request.reason))


@app.post("/vaults/{vault_id}/claims", response_model=PositionResponse)
def record_claim_endpoint(vault_id: int, request: ClaimRequest, engine: FundingEngine = Depends(get_engine)):
    position = engine.ledger.record_claim(vault_id, request.investor, request.kind)
    return PositionResponse.model_validate(position)


@app.get("/vaults/{vault_id}/capacity", response_model=CapacityResponse)
def capacity_endpoint(vault_id: int, engine: FundingEngine = Depends(get_engine)):
    return CapacityResponse(vault_id=vault_id, remaining_capacity=engine.ledger.remaining_capacity(vault_id))


@app.get("/vaults/{vault_id}/positions", response_model=PositionListResponse)
def list_positions_endpoint(vault_id: int, engine: FundingEngine = Depends(get_engine)):
    engine.vaults.get_vault(vault_id)
    positions = engine.ledger.list_positions(vault_id)
    return PositionListResponse(
        positions=[PositionResponse.model_validate(p) for p in positions],
        total=sum(p.amount_deposited for p in positions)
    )


@app.get("/vaults/{vault_id}/positions/{investor}", response_model=PositionResponse)
def get_position_endpoint(vault_id: int, investor: str, engine: FundingEngine = Depends(get_engine)):
    position = engine.ledger.get_position(vault_id, investor)
    if position is None:
        raise HTTPException(status_code=404, detail=f"No position for {investor} in vault {vault_id}")
    return PositionResponse.model_validate(position)


# Repayment

@app.post("/vaults/{vault_id}/schedule", response_model=ScheduleResponse)
def create_schedule_endpoint(vault_id: int, request: ScheduleCreateRequest = ScheduleCreateRequest(),
                             engine: FundingEngine = Depends(get_engine)):
    schedule = engine.repayment.create_schedule(vault_id, request.total_months)
    return ScheduleResponse.model_validate(schedule)


@app.get("/vaults/{vault_id}/schedule", response_model=ScheduleStatusResponse)
def get_schedule_endpoint(vault_id: int, engine: FundingEngine = Depends(get_engine)):
    status = engine.repayment.schedule_status(vault_id)
    return ScheduleStatusResponse(
        schedule=ScheduleResponse.model_validate(status["schedule"]),
        remaining_owed=status["remaining_owed"],
        is_due=status["is_due"],
        overdue_periods=status["overdue_periods"]
    )


@app.get("/vaults/{vault_id}/payments", response_model=PaymentListResponse)
def list_payments_endpoint(vault_id: int, engine: FundingEngine = Depends(get_engine)):
    payments = engine.repayment.list_payments(vault_id)
    return PaymentListResponse(payments=[PaymentResponse.model_validate(p) for p in payments])


@app.get("/vaults/{vault_id}/upkeep", response_model=VaultUpkeepResponse)
def vault_upkeep_endpoint(vault_id: int, engine: FundingEngine = Depends(get_engine)):
    return VaultUpkeepResponse(vault_id=vault_id, upkeep_needed=engine.repayment.check_upkeep_for(vault_id))


@app.get("/schedules/active", response_model=ActiveSchedulesResponse)
def active_schedules_endpoint(engine: FundingEngine = Depends(get_engine)):
    return ActiveSchedulesResponse(vault_ids=engine.repayment.get_active_schedules())


@app.post("/upkeep/check", response_model=UpkeepCheckResponse)
def check_upkeep_endpoint(request: UpkeepRequest = UpkeepRequest(), engine: FundingEngine = Depends(get_engine)):
    """Read-only: never changes state, however often it is called."""
    upkeep_needed, perform_data = engine.repayment.check_upkeep(request.data.encode("utf-8"))
    return UpkeepCheckResponse(upkeep_needed=upkeep_needed, perform_data=perform_data.decode("utf-8"))


@app.post("/upkeep/perform", response_model=UpkeepPerformResponse)
def perform_upkeep_endpoint(request: UpkeepRequest = UpkeepRequest(), engine: FundingEngine = Depends(get_engine)):
    payments = engine.repayment.perform_upkeep(request.data.encode("utf-8"))
    return UpkeepPerformResponse(processed=[PaymentResponse.model_validate(p) for p in payments])


# Price multiplier

@app.post("/price/observations", response_model=PriceStateResponse)
def observe_price_endpoint(request: PriceObserveRequest, engine: FundingEngine = Depends(get_engine)):
    state = engine.pricing.observe(request.price, request.timestamp)
    return PriceStateResponse.model_validate(state)


@app.get("/price", response_model=PriceStateResponse)
def price_state_endpoint(engine: FundingEngine = Depends(get_engine)):
    return PriceStateResponse.model_validate(engine.pricing.snapshot())


@app.get("/price/simulate", response_model=SimulateResponse)
def simulate_endpoint(amount: int, engine: FundingEngine = Depends(get_engine)):
    return SimulateResponse(**engine.pricing.simulate(amount))


@app.get("/price/feed", response_model=FeedInfoResponse)
def feed_info_endpoint(engine: FundingEngine = Depends(get_engine)):
    return FeedInfoResponse(**engine.pricing.feed_info())


# Fair selection

@app.post("/lottery/rounds", response_model=LotteryRoundResponse)
def start_round_endpoint(engine: FundingEngine = Depends(get_engine)):
    return LotteryRoundResponse.model_validate(engine.lottery.start_round())


@app.get("/lottery/current", response_model=LotteryRoundResponse)
def current_round_endpoint(engine: FundingEngine = Depends(get_engine)):
    lottery_round = engine.lottery.current_round()
    if lottery_round is None:
        raise HTTPException(status_code=404, detail="No lottery round has been started")
    return LotteryRoundResponse.model_validate(lottery_round)


@app.get("/lottery/rounds/{round_id}", response_model=LotteryRoundResponse)
def get_round_endpoint(round_id: int, engine: FundingEngine = Depends(get_engine)):
    return LotteryRoundResponse.model_validate(engine.lottery.get_round(round_id))


@app.get("/lottery/rounds/{round_id}/participants", response_model=ParticipantsResponse)
def participants_endpoint(round_id: int, engine: FundingEngine = Depends(get_engine)):
    return ParticipantsResponse(round_id=round_id, participants=engine.lottery.get_participants(round_id))


@app.post("/lottery/enter", response_model=LotteryRoundResponse)
def enter_round_endpoint(request: LotteryEnterRequest, engine: FundingEngine = Depends(get_engine)):
    return LotteryRoundResponse.model_validate(engine.lottery.enter(request.vault_id))


@app.get("/lottery/eligibility/{vault_id}", response_model=EligibilityResponse)
def eligibility_endpoint(vault_id: int, engine: FundingEngine = Depends(get_engine)):
    eligible, reason = engine.lottery.can_participate(vault_id)
    return EligibilityResponse(
        vault_id=vault_id,
        eligible=eligible,
        reason=reason,
        entry_fee=engine.lottery.entry_fee
    )


@app.post("/lottery/request-randomness", response_model=LotteryRoundResponse)
def request_randomness_endpoint(engine: FundingEngine = Depends(get_engine)):
    return LotteryRoundResponse.model_validate(engine.lottery.request_randomness())


@app.post("/lottery/resolve", response_model=LotteryRoundResponse)
def resolve_round_endpoint(request: LotteryResolveRequest, engine: FundingEngine = Depends(get_engine)):
    """Randomness callback: selects the winner and pays out the prize pool."""
    resolved = engine.lottery.resolve_round(request.random_value, request.round_id)
    return LotteryRoundResponse.model_validate(resolved)


# Monitoring

@app.get("/events", response_model=EventListResponse)
def list_events_endpoint(kind: Optional[str] = None, vault_id: Optional[int] = None,
                         round_id: Optional[int] = None, after_id: int = 0, limit: int = 100,
                         engine: FundingEngine = Depends(get_engine)):
    events = engine.events.list_events(kind=kind, vault_id=vault_id, round_id=round_id,
                                       after_id=after_id, limit=limit)
    return EventListResponse(events=[EventResponse.model_validate(e) for e in events])


@app.get("/keeper/status")
def keeper_status_endpoint():
    return keeper.get_status()
