from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from realtime import RealtimeHub, serve_connection
from settlement import AlgodNetwork, LedgerNetwork, SettlementEngine

from .auth import TokenAuthority
from .config import Settings, get_settings
from .log import configure_logging
from .models import (
    AuthResponse, BalanceResponse, ConfirmSettlementRequest, ConnectWalletRequest,
    EmergencyRequestCreate, EmergencyResponse, EmergencyStatus, EventKind, Jar,
    JarsResponse, RecordResponse, RecordTransactionRequest, ReplaceJarsRequest,
    SettlementConfirmation, SettlementPreparation, SettlementsResponse, SubmitSettlementRequest,
    TransactionFilter, TransactionStatus, TransactionsResponse, User, UserProfile,
)
from .notifier import Notifier, build_notifier
from .service import (
    ConflictError, ExternalDependencyError, LedgerService, NotFoundError,
    Unauthenticated, ValidationError, utc_now,
)
from .storage import InMemoryStorage

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    network: Optional[LedgerNetwork] = None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utc_now,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.app.log_level, settings.app.log_json)

    storage = storage or InMemoryStorage()
    network = network or AlgodNetwork(settings.algorand)
    notifier = notifier or build_notifier(settings.twilio)

    app = FastAPI(
        title="Jar Ledger API",
        description="Budget jars with batched, Merkle-committed settlement and realtime device sync",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.app.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.network = network
    app.state.notifier = notifier
    app.state.ledger = LedgerService(storage, notifier=notifier, clock=clock)
    app.state.settlement = SettlementEngine(
        storage, network=network, clock=clock,
        confirmation_rounds=settings.algorand.confirmation_rounds,
    )
    app.state.hub = RealtimeHub()
    app.state.authority = TokenAuthority(settings.auth)

    _register_routes(app)
    logger.info("app_created", environment=settings.app.app_environment, network=network.describe())
    return app


def current_user_id(request: Request, authorization: Optional[str] = Header(default=None)) -> int:
    try:
        return request.app.state.authority.verify_header(authorization)
    except Unauthenticated as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))


async def read_balance(network: LedgerNetwork, address: str) -> Decimal:
    try:
        return await run_in_threadpool(network.get_balance, address)
    except ExternalDependencyError as e:
        logger.warning("balance_unavailable", wallet_address=address, error=str(e))
        return Decimal("0")


def to_profile(user: User, balance: Decimal) -> UserProfile:
    return UserProfile(
        id=user.id,
        wallet_address=user.wallet_address,
        display_name=user.display_name,
        balance=balance,
        streak_count=user.streak_count,
        created_at=user.created_at,
    )


async def publish_jars(hub: RealtimeHub, user_id: int, jars: list[Jar]) -> None:
    await hub.publish(user_id, EventKind.JARS_SYNC, {"jars": [j.model_dump(mode="json") for j in jars]})


async def publish_settlement(hub: RealtimeHub, user_id: int, confirmation: SettlementConfirmation) -> None:
    for txn in confirmation.transactions:
        await hub.publish(user_id, EventKind.TRANSACTION_SYNC, {"transaction": txn.model_dump(mode="json")})


def _register_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["System"])
    def health_check(request: Request):
        state = request.app.state
        return {
            "status": "healthy",
            "service": "jar-ledger",
            "timestamp": utc_now().isoformat(),
            "services": {
                "store": "in-memory",
                "ledger_network": state.network.describe(),
                "notifier": "configured" if state.settings.twilio.is_configured else "not configured",
                "live_users": len(state.hub.connected_users),
            },
        }

    # Auth

    @app.post("/auth/wallet", response_model=AuthResponse, tags=["Auth"])
    async def connect_wallet(request: ConnectWalletRequest, http: Request) -> AuthResponse:
        state = http.app.state
        try:
            user = state.ledger.connect_wallet(request.wallet_address)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        balance = await read_balance(state.network, user.wallet_address)
        return AuthResponse(token=state.authority.issue(user), user=to_profile(user, balance))

    @app.post("/auth/verify", tags=["Auth"])
    def verify_token(user_id: int = Depends(current_user_id)):
        return {"valid": True, "userId": user_id}

    # User

    @app.get("/user/profile", response_model=UserProfile, tags=["User"])
    async def get_profile(http: Request, user_id: int = Depends(current_user_id)) -> UserProfile:
        state = http.app.state
        try:
            user = state.ledger.get_user(user_id)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        balance = await read_balance(state.network, user.wallet_address)
        return to_profile(user, balance)

    @app.get("/user/jars", response_model=JarsResponse, tags=["User"])
    def get_jars(http: Request, user_id: int = Depends(current_user_id)) -> JarsResponse:
        return JarsResponse(jars=http.app.state.ledger.list_jars(user_id))

    @app.post("/user/jars", response_model=JarsResponse, tags=["User"])
    async def replace_jars(request: ReplaceJarsRequest, http: Request, user_id: int = Depends(current_user_id)) -> JarsResponse:
        state = http.app.state
        try:
            jars = state.ledger.replace_jars(user_id, request.jars)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        await publish_jars(state.hub, user_id, jars)
        return JarsResponse(jars=jars)

    @app.get("/user/balance", response_model=BalanceResponse, tags=["User"])
    async def refresh_balance(http: Request, user_id: int = Depends(current_user_id)) -> BalanceResponse:
        state = http.app.state
        try:
            user = state.ledger.get_user(user_id)
            balance = await run_in_threadpool(state.network.get_balance, user.wallet_address)
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ExternalDependencyError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

        await state.hub.publish(user_id, EventKind.BALANCE_SYNC, {"balance": str(balance)})
        return BalanceResponse(balance=balance)

    # Transactions

    @app.get("/transactions", response_model=TransactionsResponse, tags=["Transactions"])
    def list_transactions(
        http: Request,
        status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
        limit: int = Query(default=50, ge=0),
        offset: int = Query(default=0, ge=0),
        user_id: int = Depends(current_user_id),
    ) -> TransactionsResponse:
        query = TransactionFilter(status=status_filter, limit=limit, offset=offset)
        return TransactionsResponse(transactions=http.app.state.ledger.list_transactions(user_id, query))

    @app.post("/transactions", response_model=RecordResponse, tags=["Transactions"])
    async def record_transaction(request: RecordTransactionRequest, http: Request, user_id: int = Depends(current_user_id)) -> RecordResponse:
        state = http.app.state
        try:
            result = state.ledger.record(
                user_id,
                amount=request.amount,
                category=request.category,
                description=request.description,
                jar_id=request.jar_id,
            )
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        if result.jars is not None:
            await publish_jars(state.hub, user_id, result.jars)
        await state.hub.publish(
            user_id, EventKind.TRANSACTION_SYNC, {"transaction": result.transaction.model_dump(mode="json")}
        )
        return RecordResponse(transaction=result.transaction, streak_count=result.streak_count)

    @app.post("/transactions/settle", response_model=SettlementPreparation, tags=["Settlement"])
    def prepare_settlement(http: Request, user_id: int = Depends(current_user_id)) -> SettlementPreparation:
        try:
            return http.app.state.settlement.prepare(user_id)
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.post("/transactions/settle/confirm", response_model=SettlementConfirmation, tags=["Settlement"])
    async def confirm_settlement(request: ConfirmSettlementRequest, http: Request, user_id: int = Depends(current_user_id)) -> SettlementConfirmation:
        state = http.app.state
        try:
            confirmation = state.settlement.confirm(
                user_id, request.ledger_txn_hash, request.transaction_ids, request.merkle_root
            )
        except ConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        await publish_settlement(state.hub, user_id, confirmation)
        return confirmation

    @app.post("/transactions/settle/submit", response_model=SettlementConfirmation, tags=["Settlement"])
    async def submit_settlement(request: SubmitSettlementRequest, http: Request, user_id: int = Depends(current_user_id)) -> SettlementConfirmation:
        state = http.app.state
        try:
            confirmation = await run_in_threadpool(
                state.settlement.submit,
                user_id, request.signed_commitment, request.transaction_ids, request.merkle_root,
            )
        except ConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except ExternalDependencyError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

        await publish_settlement(state.hub, user_id, confirmation)
        return confirmation

    @app.get("/settlements", response_model=SettlementsResponse, tags=["Settlement"])
    def list_settlements(http: Request, user_id: int = Depends(current_user_id)) -> SettlementsResponse:
        return SettlementsResponse(settlements=http.app.state.settlement.list_settlements(user_id))

    # Emergency

    @app.post("/emergency/request", response_model=EmergencyResponse, tags=["Emergency"])
    async def request_emergency(request: EmergencyRequestCreate, http: Request, user_id: int = Depends(current_user_id)) -> EmergencyResponse:
        try:
            created = await run_in_threadpool(
                http.app.state.ledger.request_emergency,
                user_id, request.guardian_phone, request.amount, request.reason,
            )
        except NotFoundError as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        sent = created.status == EmergencyStatus.SENT
        return EmergencyResponse(
            success=True,
            request=created,
            message="Guardian notified" if sent else "Request recorded, guardian not notified yet",
        )

    # Realtime

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket):
        state = websocket.app.state
        await serve_connection(websocket, state.hub, state.authority, state.settings.app.session_idle_timeout)


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
