"""
Settlement Package

Batches pending spending events into a single Merkle commitment that is
written to the external ledger, then records the confirmed batch.
"""

from .engine import SettlementEngine, build_commitment, encode_commitment, COMMITMENT_TYPE
from .merkle import merkle_root, inclusion_proof, verify_proof
from .network import LedgerNetwork, AlgodNetwork

__all__ = [
    "SettlementEngine",
    "build_commitment",
    "encode_commitment",
    "COMMITMENT_TYPE",
    "merkle_root",
    "inclusion_proof",
    "verify_proof",
    "LedgerNetwork",
    "AlgodNetwork",
]
