from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"


class EmergencyStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"


class EventKind(str, Enum):
    JARS_SYNC = "sync:jars"
    TRANSACTION_SYNC = "sync:transactions"
    BALANCE_SYNC = "sync:balance"


class User(BaseModel):
    id: int
    wallet_address: str
    display_name: str
    streak_count: int = 0
    last_streak_date: Optional[date] = None
    created_at: datetime
    last_login: datetime

    model_config = ConfigDict(from_attributes=True)


class Jar(BaseModel):
    id: int
    user_id: int
    name: str
    budget_amount: Decimal
    spent_amount: Decimal = Decimal("0")
    color: str
    icon: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def remaining(self) -> Decimal:
        return self.budget_amount - self.spent_amount


class Transaction(BaseModel):
    id: int
    user_id: int
    jar_id: Optional[int] = None
    amount: Decimal
    description: str = ""
    category: str
    status: TransactionStatus = TransactionStatus.PENDING
    txn_hash: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_settled(self) -> bool:
        return self.status == TransactionStatus.SETTLED


class Settlement(BaseModel):
    id: int
    user_id: int
    merkle_root: str
    ledger_txn_hash: str
    transaction_ids: list[int]
    settled_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EmergencyRequest(BaseModel):
    id: int
    user_id: int
    guardian_phone: str
    amount: Decimal
    reason: str
    status: EmergencyStatus = EmergencyStatus.PENDING
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionFilter(BaseModel):
    status: Optional[TransactionStatus] = None
    limit: int = Field(default=50, ge=0)
    offset: int = Field(default=0, ge=0)


# Request bodies

class ConnectWalletRequest(BaseModel):
    wallet_address: str = Field(..., alias="walletAddress")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {"walletAddress": "MFRGGZDFMZTWQ2LKNNWG23TPOBYXE43UOV3HO6DZPIYTEMZUGU3DOOBZ"}
    })


class RecordTransactionRequest(BaseModel):
    jar_id: Optional[int] = Field(default=None, alias="jarId")
    amount: Decimal
    description: Optional[str] = None
    category: str = ""

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {"jarId": 1, "amount": 500, "description": "Lunch", "category": "food"}
    })


class JarInput(BaseModel):
    name: str
    budget_amount: Decimal
    spent_amount: Decimal = Decimal("0")
    color: str
    icon: str


class ReplaceJarsRequest(BaseModel):
    jars: list[JarInput]


class ConfirmSettlementRequest(BaseModel):
    ledger_txn_hash: str = Field(..., alias="txId")
    transaction_ids: list[int] = Field(..., alias="transactionIds")
    merkle_root: str = Field(..., alias="merkleRoot")

    model_config = ConfigDict(populate_by_name=True)


class SubmitSettlementRequest(BaseModel):
    signed_commitment: str = Field(..., alias="signedTxn", description="Base64 signed ledger write")
    transaction_ids: list[int] = Field(..., alias="transactionIds")
    merkle_root: str = Field(..., alias="merkleRoot")

    model_config = ConfigDict(populate_by_name=True)


class EmergencyRequestCreate(BaseModel):
    guardian_phone: str = Field(default="", alias="guardianPhone")
    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


# Results and responses

class RecordResult(BaseModel):
    """Delta produced by recording a spending event."""
    transaction: Transaction
    jar: Optional[Jar] = None
    jars: Optional[list[Jar]] = None
    streak_count: int


class SettlementPreparation(BaseModel):
    merkle_root: str
    transaction_ids: list[int]
    count: int
    commitment: dict[str, Any]
    unsigned_commitment: str


class SettlementConfirmation(BaseModel):
    settled_count: int
    ledger_txn_hash: str
    settlement: Settlement
    transactions: list[Transaction]


class UserProfile(BaseModel):
    id: int
    wallet_address: str
    display_name: str
    balance: Decimal
    streak_count: int
    created_at: datetime


class AuthResponse(BaseModel):
    token: str
    user: UserProfile


class JarsResponse(BaseModel):
    jars: list[Jar]


class TransactionsResponse(BaseModel):
    transactions: list[Transaction]


class RecordResponse(BaseModel):
    transaction: Transaction
    streak_count: int


class SettlementsResponse(BaseModel):
    settlements: list[Settlement]


class BalanceResponse(BaseModel):
    balance: Decimal


class EmergencyResponse(BaseModel):
    success: bool
    request: EmergencyRequest
    message: str
