"""
Unit Tests for the Settlement Engine

Tests cover:
1. Prepare: snapshot of pending events, Merkle root and commitment payload
2. Confirm: all-or-nothing settlement and the double-confirm guard
3. Submit: ledger network round trip before confirmation
"""

import base64
import json
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ledger.models import TransactionStatus
from ledger.service import (
    LedgerService,
    ConfirmationMismatch,
    ConflictError,
    ExternalDependencyError,
    MalformedConfirmation,
    NothingToSettle,
    ValidationError,
)
from ledger.storage import InMemoryStorage
from settlement.engine import COMMITMENT_TYPE, SettlementEngine
from settlement.merkle import merkle_root


ALICE = "A" * 58
BOB = "B" * 58
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeNetwork:
    def __init__(self, fail_submit=False, fail_confirm=False):
        self.fail_submit = fail_submit
        self.fail_confirm = fail_confirm
        self.submitted = []

    def submit(self, signed_commitment):
        if self.fail_submit:
            raise ExternalDependencyError("node unreachable")
        self.submitted.append(signed_commitment)
        return f"TXN{len(self.submitted)}"

    def wait_for_confirmation(self, txn_hash, rounds):
        if self.fail_confirm:
            raise ExternalDependencyError(f"{txn_hash} not confirmed after {rounds} rounds")
        return {"confirmed-round": 1000}

    def get_balance(self, address):
        return Decimal("12.5")

    def describe(self):
        return "fake"


class Fixture:
    def __init__(self, network=None):
        self.storage = InMemoryStorage()
        clock = lambda: NOW
        self.ledger = LedgerService(self.storage, clock=clock)
        self.engine = SettlementEngine(self.storage, network=network, clock=clock)
        self.alice = self.ledger.connect_wallet(ALICE)
        self.bob = self.ledger.connect_wallet(BOB)
        self.food = self.ledger.list_jars(self.alice.id)[0]

    def spend(self, user, amount=100, jar_id=None):
        return self.ledger.record(user.id, amount=amount, category="food", jar_id=jar_id).transaction

    def status_of(self, txn_id):
        return self.storage.get("transactions", txn_id)["status"]


class TestPrepareSettlement:
    """Tests for preparing a settlement batch."""

    def test_nothing_to_settle(self):
        """Preparing with no pending events is a validation error."""
        f = Fixture()

        with pytest.raises(NothingToSettle):
            f.engine.prepare(f.alice.id)
        assert issubclass(NothingToSettle, ValidationError)

    def test_snapshot_covers_only_own_pending(self):
        """The batch holds exactly the caller's pending ids."""
        f = Fixture()
        mine = [f.spend(f.alice).id for _ in range(3)]
        f.spend(f.bob)

        prep = f.engine.prepare(f.alice.id)

        assert prep.transaction_ids == sorted(mine)
        assert prep.count == 3
        assert prep.merkle_root == merkle_root(mine)

    def test_commitment_payload(self):
        """The commitment binds type, root, count and timestamp."""
        f = Fixture()
        f.spend(f.alice)
        f.spend(f.alice)

        prep = f.engine.prepare(f.alice.id)

        assert prep.commitment == {
            "type": COMMITMENT_TYPE,
            "merkleRoot": prep.merkle_root,
            "count": 2,
            "timestamp": int(NOW.timestamp() * 1000),
        }
        decoded = json.loads(base64.b64decode(prep.unsigned_commitment))
        assert decoded == prep.commitment

    def test_prepare_is_read_only_and_repeatable(self):
        """Preparing twice writes nothing and yields the same root."""
        f = Fixture()
        txn = f.spend(f.alice)

        first = f.engine.prepare(f.alice.id)
        second = f.engine.prepare(f.alice.id)

        assert first.merkle_root == second.merkle_root
        assert f.status_of(txn.id) == TransactionStatus.PENDING
        assert f.storage.settlements == {}

    def test_later_events_join_the_next_batch(self):
        """Events recorded after prepare stay pending for the next batch."""
        f = Fixture()
        first = f.spend(f.alice)
        prep = f.engine.prepare(f.alice.id)
        late = f.spend(f.alice)

        f.engine.confirm(f.alice.id, "HASH1", prep.transaction_ids, prep.merkle_root)

        assert f.status_of(first.id) == TransactionStatus.SETTLED
        assert f.status_of(late.id) == TransactionStatus.PENDING
        assert f.engine.prepare(f.alice.id).transaction_ids == [late.id]


class TestConfirmSettlement:
    """Tests for confirming a settlement batch."""

    def test_scenario_record_prepare_confirm(self):
        """Jar Food (5000/0) -> spend 500 -> prepare -> confirm -> settled; repeat is a conflict."""
        f = Fixture()
        txn = f.spend(f.alice, amount=500, jar_id=f.food.id)
        assert f.ledger.list_jars(f.alice.id)[0].spent_amount == Decimal("500")

        prep = f.engine.prepare(f.alice.id)
        assert prep.merkle_root == merkle_root([txn.id])

        result = f.engine.confirm(f.alice.id, "LEDGERHASH", prep.transaction_ids, prep.merkle_root)

        assert result.settled_count == 1
        settled = f.ledger.list_transactions(f.alice.id)[0]
        assert settled.status == TransactionStatus.SETTLED
        assert settled.txn_hash == "LEDGERHASH"
        assert settled.settled_at == NOW
        assert settled.amount == Decimal("500")

        with pytest.raises(ConflictError):
            f.engine.confirm(f.alice.id, "LEDGERHASH", prep.transaction_ids, prep.merkle_root)
        assert len(f.storage.settlements) == 1

    def test_settlement_record(self):
        """Confirm stores a settlement with the sorted ids and root."""
        f = Fixture()
        ids = [f.spend(f.alice).id for _ in range(3)]
        root = merkle_root(ids)

        result = f.engine.confirm(f.alice.id, "H", list(reversed(ids)), root)

        assert result.settlement.merkle_root == root
        assert result.settlement.ledger_txn_hash == "H"
        assert result.settlement.transaction_ids == sorted(ids)
        assert result.settlement.user_id == f.alice.id
        assert [t.id for t in result.transactions] == sorted(ids)
        assert f.engine.list_settlements(f.alice.id) == [result.settlement]

    def test_cross_user_confirmation_rejected(self):
        """A batch with another user's id settles nothing."""
        f = Fixture()
        mine = f.spend(f.alice)
        theirs = f.spend(f.bob)
        ids = [mine.id, theirs.id]

        with pytest.raises(ConfirmationMismatch):
            f.engine.confirm(f.alice.id, "H", ids, merkle_root(ids))

        assert f.status_of(mine.id) == TransactionStatus.PENDING
        assert f.status_of(theirs.id) == TransactionStatus.PENDING
        assert f.storage.settlements == {}

    def test_unknown_id_rejected(self):
        """A batch with an unknown id settles nothing."""
        f = Fixture()
        mine = f.spend(f.alice)
        ids = [mine.id, 999]

        with pytest.raises(ConfirmationMismatch):
            f.engine.confirm(f.alice.id, "H", ids, merkle_root(ids))
        assert f.status_of(mine.id) == TransactionStatus.PENDING

    def test_partially_settled_batch_rejected_whole(self):
        """A batch mixing settled and pending ids is refused whole."""
        f = Fixture()
        a = f.spend(f.alice)
        f.engine.confirm(f.alice.id, "H1", [a.id], merkle_root([a.id]))
        b = f.spend(f.alice)
        ids = [a.id, b.id]

        with pytest.raises(ConfirmationMismatch):
            f.engine.confirm(f.alice.id, "H2", ids, merkle_root(ids))

        assert f.status_of(b.id) == TransactionStatus.PENDING
        assert f.storage.get("transactions", a.id)["txn_hash"] == "H1"
        assert len(f.storage.settlements) == 1

    def test_root_must_match_ids(self):
        """A root that does not cover the ids is malformed."""
        f = Fixture()
        a = f.spend(f.alice)
        b = f.spend(f.alice)

        with pytest.raises(MalformedConfirmation):
            f.engine.confirm(f.alice.id, "H", [a.id, b.id], merkle_root([a.id]))

    @pytest.mark.parametrize("txn_hash,ids", [("", [1]), ("H", []), ("H", [1, 1])])
    def test_malformed_confirmation(self, txn_hash, ids):
        """Empty hash, empty ids and duplicate ids are malformed."""
        f = Fixture()
        f.spend(f.alice)

        with pytest.raises(MalformedConfirmation):
            f.engine.confirm(f.alice.id, txn_hash, ids, "root")
        assert f.storage.settlements == {}

    def test_failure_mid_batch_leaves_nothing_settled(self, monkeypatch):
        """A failure while writing the settlement undoes every status change."""
        f = Fixture()
        ids = [f.spend(f.alice).id for _ in range(3)]
        original_insert = f.storage.insert

        def failing_insert(table, row):
            if table == "settlements":
                raise RuntimeError("disk full")
            return original_insert(table, row)

        monkeypatch.setattr(f.storage, "insert", failing_insert)

        with pytest.raises(RuntimeError):
            f.engine.confirm(f.alice.id, "H", ids, merkle_root(ids))

        assert all(f.status_of(i) == TransactionStatus.PENDING for i in ids)
        assert all(f.storage.get("transactions", i)["txn_hash"] is None for i in ids)


class TestSubmitSettlement:
    """Tests for relaying a signed commitment to the network."""

    SIGNED = base64.b64encode(b"signed-bytes").decode()

    def test_submit_confirms_with_network_hash(self):
        """The network's transaction id becomes the settlement hash."""
        network = FakeNetwork()
        f = Fixture(network=network)
        f.spend(f.alice)
        prep = f.engine.prepare(f.alice.id)

        result = f.engine.submit(f.alice.id, self.SIGNED, prep.transaction_ids, prep.merkle_root)

        assert network.submitted == [b"signed-bytes"]
        assert result.ledger_txn_hash == "TXN1"
        assert result.settled_count == 1

    @pytest.mark.parametrize("network", [FakeNetwork(fail_submit=True), FakeNetwork(fail_confirm=True)])
    def test_network_failure_leaves_batch_pending(self, network):
        """Submit or confirmation failure leaves the batch retryable."""
        f = Fixture(network=network)
        txn = f.spend(f.alice)
        prep = f.engine.prepare(f.alice.id)

        with pytest.raises(ExternalDependencyError):
            f.engine.submit(f.alice.id, self.SIGNED, prep.transaction_ids, prep.merkle_root)

        assert f.status_of(txn.id) == TransactionStatus.PENDING
        assert f.storage.settlements == {}
        # retry once the hash is known
        f.engine.confirm(f.alice.id, "LATE", prep.transaction_ids, prep.merkle_root)
        assert f.status_of(txn.id) == TransactionStatus.SETTLED

    def test_settled_batch_is_not_resubmitted(self):
        """A settled batch is refused before reaching the network."""
        network = FakeNetwork()
        f = Fixture(network=network)
        f.spend(f.alice)
        prep = f.engine.prepare(f.alice.id)
        f.engine.submit(f.alice.id, self.SIGNED, prep.transaction_ids, prep.merkle_root)

        with pytest.raises(ConfirmationMismatch):
            f.engine.submit(f.alice.id, self.SIGNED, prep.transaction_ids, prep.merkle_root)
        assert len(network.submitted) == 1

    def test_signed_commitment_must_be_base64(self):
        """Undecodable signed bytes never reach the network."""
        network = FakeNetwork()
        f = Fixture(network=network)
        f.spend(f.alice)
        prep = f.engine.prepare(f.alice.id)

        with pytest.raises(MalformedConfirmation):
            f.engine.submit(f.alice.id, "not base64!!", prep.transaction_ids, prep.merkle_root)
        assert network.submitted == []
