import base64
import json
from datetime import datetime
from typing import Callable, Optional

import structlog

from ledger.models import (
    Settlement,
    SettlementConfirmation,
    SettlementPreparation,
    Transaction,
    TransactionStatus,
)
from ledger.service import (
    ConfirmationMismatch,
    MalformedConfirmation,
    NothingToSettle,
    utc_now,
)
from ledger.storage import InMemoryStorage

from .merkle import merkle_root
from .network import LedgerNetwork, decode_signed_commitment

logger = structlog.get_logger(__name__)

COMMITMENT_TYPE = "CLEARCASH_SETTLEMENT"


def build_commitment(root: str, count: int, timestamp_ms: int) -> dict:
    return {
        "type": COMMITMENT_TYPE,
        "merkleRoot": root,
        "count": count,
        "timestamp": timestamp_ms,
    }


def encode_commitment(commitment: dict) -> str:
    """Compact JSON, base64 encoded, ready to embed as the ledger write's note."""
    raw = json.dumps(commitment, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


class SettlementEngine:
    """
    Batches a user's pending transactions into one ledger commitment.

    ``prepare`` only reads: it can be repeated and abandoned freely.
    ``confirm`` is the single mutating step and refuses ids that are foreign
    or already settled, so a retried or cross-device confirmation can never
    settle a transaction twice.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        network: Optional[LedgerNetwork] = None,
        clock: Callable[[], datetime] = utc_now,
        confirmation_rounds: int = 4,
    ):
        self.storage = storage
        self.network = network
        self.clock = clock
        self.confirmation_rounds = confirmation_rounds

    def prepare(self, user_id: int) -> SettlementPreparation:
        pending = self.storage.select("transactions", user_id=user_id, status=TransactionStatus.PENDING)
        if not pending:
            raise NothingToSettle("No pending transactions to settle")

        transaction_ids = sorted(row["id"] for row in pending)
        root = merkle_root(transaction_ids)
        timestamp_ms = int(self.clock().timestamp() * 1000)
        commitment = build_commitment(root, len(transaction_ids), timestamp_ms)

        logger.info("settlement_prepared", user_id=user_id, count=len(transaction_ids), merkle_root=root)
        return SettlementPreparation(
            merkle_root=root,
            transaction_ids=transaction_ids,
            count=len(transaction_ids),
            commitment=commitment,
            unsigned_commitment=encode_commitment(commitment),
        )

    def confirm(
        self,
        user_id: int,
        ledger_txn_hash: str,
        transaction_ids: list[int],
        root: str,
    ) -> SettlementConfirmation:
        if not ledger_txn_hash:
            raise MalformedConfirmation("Ledger transaction hash required")
        ids = self._validate_batch(transaction_ids, root)

        now = self.clock()
        with self.storage.transaction():
            self._check_settleable(user_id, ids)
            settled = [
                Transaction(**self.storage.update(
                    "transactions", txn_id,
                    status=TransactionStatus.SETTLED,
                    txn_hash=ledger_txn_hash,
                    settled_at=now,
                ))
                for txn_id in ids
            ]
            settlement_id = self.storage.insert("settlements", {
                "user_id": user_id,
                "merkle_root": root,
                "ledger_txn_hash": ledger_txn_hash,
                "transaction_ids": list(ids),
                "settled_at": now,
            })
            settlement = Settlement(**self.storage.get("settlements", settlement_id))

        logger.info(
            "settlement_confirmed",
            user_id=user_id,
            settlement_id=settlement_id,
            settled_count=len(ids),
            ledger_txn_hash=ledger_txn_hash,
        )
        return SettlementConfirmation(
            settled_count=len(ids),
            ledger_txn_hash=ledger_txn_hash,
            settlement=settlement,
            transactions=settled,
        )

    def submit(
        self,
        user_id: int,
        signed_commitment: str,
        transaction_ids: list[int],
        root: str,
    ) -> SettlementConfirmation:
        """
        Push a client-signed commitment to the ledger network and confirm it.

        The network round trip happens before the confirmation unit is opened;
        if it fails nothing is written and the batch stays pending.
        """
        if self.network is None:
            raise RuntimeError("No ledger network configured")
        self._check_settleable(user_id, self._validate_batch(transaction_ids, root))
        payload = decode_signed_commitment(signed_commitment)

        txn_hash = self.network.submit(payload)
        self.network.wait_for_confirmation(txn_hash, self.confirmation_rounds)
        return self.confirm(user_id, txn_hash, transaction_ids, root)

    def list_settlements(self, user_id: int) -> list[Settlement]:
        rows = self.storage.select("settlements", user_id=user_id)
        rows.sort(key=lambda r: (r["settled_at"], r["id"]), reverse=True)
        return [Settlement(**r) for r in rows]

    def _validate_batch(self, transaction_ids: list[int], root: str) -> list[int]:
        if not transaction_ids:
            raise MalformedConfirmation("Confirmation must list at least one transaction")
        ids = sorted(transaction_ids)
        if len(set(ids)) != len(ids):
            raise MalformedConfirmation("Confirmation lists a transaction more than once")
        if merkle_root(ids) != root:
            raise MalformedConfirmation("Merkle root does not match the listed transactions")
        return ids

    def _check_settleable(self, user_id: int, ids: list[int]) -> None:
        for txn_id in ids:
            row = self.storage.get("transactions", txn_id)
            if not row or row["user_id"] != user_id:
                raise ConfirmationMismatch(f"Transaction {txn_id} does not belong to this user")
            if row["status"] == TransactionStatus.SETTLED:
                raise ConfirmationMismatch(f"Transaction {txn_id} is already settled")
