import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import structlog

from .models import (
    EmergencyRequest,
    EmergencyStatus,
    Jar,
    JarInput,
    RecordResult,
    Transaction,
    TransactionFilter,
    TransactionStatus,
    User,
)
from .storage import InMemoryStorage
from .streak import next_streak

logger = structlog.get_logger(__name__)


class LedgerServiceError(Exception):
    pass


class ValidationError(LedgerServiceError):
    pass


class InvalidAmount(ValidationError):
    pass


class InvalidCategory(ValidationError):
    pass


class InvalidWalletAddress(ValidationError):
    pass


class MalformedConfirmation(ValidationError):
    pass


class NothingToSettle(ValidationError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class JarNotFoundError(NotFoundError):
    pass


class ConflictError(LedgerServiceError):
    pass


class ConfirmationMismatch(ConflictError):
    pass


class ExternalDependencyError(LedgerServiceError):
    pass


class Unauthenticated(LedgerServiceError):
    pass


WALLET_ADDRESS_PATTERN = re.compile(r"^[A-Z2-7]{58}$")

DEFAULT_JARS = [
    {"name": "Food & Dining", "budget_amount": Decimal("5000"), "color": "#FF6B6B", "icon": "🍜"},
    {"name": "Transport", "budget_amount": Decimal("2000"), "color": "#4ECDC4", "icon": "🚌"},
    {"name": "Bills & Utilities", "budget_amount": Decimal("3000"), "color": "#45B7D1", "icon": "💡"},
    {"name": "Fun & Entertainment", "budget_amount": Decimal("2000"), "color": "#96CEB4", "icon": "🎮"},
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_amount(value: Any) -> Decimal:
    """Coerce ``value`` to a positive, finite Decimal or raise InvalidAmount."""
    if value is None or isinstance(value, bool):
        raise InvalidAmount("Invalid amount")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {value}")
    return amount


class LedgerService:
    """
    Users, jars and spending events.

    Each mutating call runs inside one storage transaction and returns the
    resulting state; pushing that state to live sessions is left to the
    caller.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        notifier=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage or InMemoryStorage()
        self.notifier = notifier
        self.clock = clock

    # Users

    def connect_wallet(self, wallet_address: str) -> User:
        address = (wallet_address or "").strip()
        if not WALLET_ADDRESS_PATTERN.match(address):
            raise InvalidWalletAddress("Invalid wallet address")

        now = self.clock()
        with self.storage.transaction():
            existing = self.storage.find_one("users", wallet_address=address)
            if existing:
                row = self.storage.update("users", existing["id"], last_login=now)
                return User(**row)

            user_id = self.storage.insert("users", {
                "wallet_address": address,
                "display_name": f"User {address[:8]}",
                "streak_count": 0,
                "last_streak_date": None,
                "created_at": now,
                "last_login": now,
            })
            for jar in DEFAULT_JARS:
                self.storage.insert("jars", {
                    **jar,
                    "user_id": user_id,
                    "spent_amount": Decimal("0"),
                    "created_at": now,
                })

        logger.info("user_created", user_id=user_id, wallet_address=address)
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> User:
        row = self.storage.get("users", user_id)
        if not row:
            raise UserNotFoundError(f"User {user_id} not found")
        return User(**row)

    def update_streak(self, user_id: int, today=None) -> int:
        today = today or self.clock().date()
        with self.storage.transaction():
            user = self.get_user(user_id)
            count, last_date = next_streak(user.streak_count, user.last_streak_date, today)
            if (count, last_date) != (user.streak_count, user.last_streak_date):
                self.storage.update("users", user_id, streak_count=count, last_streak_date=last_date)
        return count

    # Jars

    def list_jars(self, user_id: int) -> list[Jar]:
        rows = self.storage.select("jars", user_id=user_id)
        return [Jar(**r) for r in sorted(rows, key=lambda r: r["id"])]

    def replace_jars(self, user_id: int, jars: list[JarInput]) -> list[Jar]:
        for jar in jars:
            if not jar.name or not jar.name.strip():
                raise ValidationError("Jar name required")
            parse_amount(jar.budget_amount)
            if jar.spent_amount < 0:
                raise InvalidAmount("Spent amount cannot be negative")

        now = self.clock()
        with self.storage.transaction():
            self.get_user(user_id)
            removed = self.storage.delete_where("jars", user_id=user_id)
            for jar in jars:
                self.storage.insert("jars", {
                    "user_id": user_id,
                    "name": jar.name.strip(),
                    "budget_amount": jar.budget_amount,
                    "spent_amount": jar.spent_amount,
                    "color": jar.color,
                    "icon": jar.icon,
                    "created_at": now,
                })

        logger.info("jars_replaced", user_id=user_id, removed=removed, inserted=len(jars))
        return self.list_jars(user_id)

    # Transactions

    def record(
        self,
        user_id: int,
        amount: Any,
        category: str,
        description: Optional[str] = None,
        jar_id: Optional[int] = None,
    ) -> RecordResult:
        amount = parse_amount(amount)
        category = (category or "").strip()
        if not category:
            raise InvalidCategory("Category required")

        now = self.clock()
        jar = None
        with self.storage.transaction():
            self.get_user(user_id)
            if jar_id is not None:
                jar_row = self.storage.get("jars", jar_id)
                if not jar_row or jar_row["user_id"] != user_id:
                    raise JarNotFoundError(f"Jar {jar_id} not found")

            txn_id = self.storage.insert("transactions", {
                "user_id": user_id,
                "jar_id": jar_id,
                "amount": amount,
                "description": description or "",
                "category": category,
                "status": TransactionStatus.PENDING,
                "txn_hash": None,
                "created_at": now,
                "settled_at": None,
            })
            if jar_id is not None:
                jar = Jar(**self.storage.update(
                    "jars", jar_id, spent_amount=jar_row["spent_amount"] + amount
                ))
            streak_count = self.update_streak(user_id, now.date())
            transaction = Transaction(**self.storage.get("transactions", txn_id))

        logger.info(
            "transaction_recorded",
            user_id=user_id,
            transaction_id=txn_id,
            jar_id=jar_id,
            amount=str(amount),
        )
        return RecordResult(
            transaction=transaction,
            jar=jar,
            jars=self.list_jars(user_id) if jar else None,
            streak_count=streak_count,
        )

    def list_transactions(self, user_id: int, filter: Optional[TransactionFilter] = None) -> list[Transaction]:
        filter = filter or TransactionFilter()
        where: dict[str, Any] = {"user_id": user_id}
        if filter.status:
            where["status"] = filter.status
        rows = self.storage.select("transactions", **where)
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return [Transaction(**r) for r in rows[filter.offset:filter.offset + filter.limit]]

    # Emergency requests

    def request_emergency(
        self,
        user_id: int,
        guardian_phone: str,
        amount: Any,
        reason: Optional[str] = None,
    ) -> EmergencyRequest:
        guardian_phone = (guardian_phone or "").strip()
        if not guardian_phone:
            raise ValidationError("Guardian phone and amount required")
        amount = parse_amount(amount)

        with self.storage.transaction():
            user = self.get_user(user_id)
            request_id = self.storage.insert("emergency_requests", {
                "user_id": user_id,
                "guardian_phone": guardian_phone,
                "amount": amount,
                "reason": reason or "Emergency fund request",
                "status": EmergencyStatus.PENDING,
                "created_at": self.clock(),
            })

        # Notifier runs outside the unit; its failure only leaves the request pending.
        if self.notifier is not None:
            message = (
                f"ClearCash Emergency Request: {user.wallet_address[:8]}... needs ₹{amount}. "
                f"Reason: {reason or 'Not specified'}. Send ALGO to: {user.wallet_address}"
            )
            try:
                sent = self.notifier.send(guardian_phone, message)
            except ExternalDependencyError as e:
                logger.warning("notifier_failed", request_id=request_id, error=str(e))
                sent = False
            if sent:
                self.storage.update("emergency_requests", request_id, status=EmergencyStatus.SENT)

        return EmergencyRequest(**self.storage.get("emergency_requests", request_id))
