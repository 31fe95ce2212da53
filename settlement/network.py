import base64
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import requests
import structlog

from ledger.config import AlgorandSettings
from ledger.service import ExternalDependencyError, MalformedConfirmation

logger = structlog.get_logger(__name__)

MICROALGOS_PER_ALGO = Decimal(1_000_000)


class LedgerNetwork(ABC):
    """Append-only external ledger the settlement commitments are written to."""

    @abstractmethod
    def submit(self, signed_commitment: bytes) -> str:
        """Submit a signed write and return its ledger transaction hash."""

    @abstractmethod
    def wait_for_confirmation(self, txn_hash: str, rounds: int) -> dict:
        """Block until ``txn_hash`` is confirmed or ``rounds`` have passed."""

    @abstractmethod
    def get_balance(self, address: str) -> Decimal:
        """Current balance of ``address`` in whole units."""

    def describe(self) -> str:
        return type(self).__name__


class AlgodNetwork(LedgerNetwork):
    """Talks to an algod node over its v2 REST API."""

    def __init__(self, settings: AlgorandSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()
        if settings.token:
            self.session.headers["X-Algo-API-Token"] = settings.token

    def describe(self) -> str:
        return f"algod:{self.settings.network}"

    def submit(self, signed_commitment: bytes) -> str:
        data = self._request(
            "POST", "/v2/transactions",
            data=signed_commitment,
            headers={"Content-Type": "application/x-binary"},
        )
        txn_hash = data.get("txId")
        if not txn_hash:
            raise ExternalDependencyError("Ledger network returned no transaction id")
        logger.info("commitment_submitted", txn_hash=txn_hash)
        return txn_hash

    def wait_for_confirmation(self, txn_hash: str, rounds: int) -> dict:
        status = self._request("GET", "/v2/status")
        start_round = status.get("last-round", 0)
        current = start_round
        while current < start_round + rounds:
            pending = self._request("GET", f"/v2/transactions/pending/{txn_hash}")
            if pending.get("confirmed-round", 0) > 0:
                logger.info("commitment_confirmed", txn_hash=txn_hash, round=pending["confirmed-round"])
                return pending
            if pending.get("pool-error"):
                raise ExternalDependencyError(f"Commitment rejected: {pending['pool-error']}")
            current += 1
            self._request("GET", f"/v2/status/wait-for-block-after/{current}")
        raise ExternalDependencyError(f"Commitment {txn_hash} not confirmed after {rounds} rounds")

    def get_balance(self, address: str) -> Decimal:
        data = self._request("GET", f"/v2/accounts/{address}")
        return Decimal(data.get("amount", 0)) / MICROALGOS_PER_ALGO

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = self.settings.server.rstrip("/") + path
        try:
            response = self.session.request(method, url, timeout=self.settings.request_timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            raise ExternalDependencyError(f"Ledger network error: {e}") from e
        except ValueError as e:
            raise ExternalDependencyError(f"Ledger network returned invalid JSON: {e}") from e


def decode_signed_commitment(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (ValueError, TypeError) as e:
        raise MalformedConfirmation("Signed commitment is not valid base64") from e
