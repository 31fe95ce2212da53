"""
Merkle commitment over transaction identifiers.

Leaves are SHA-256 of the identifier's decimal string, taken in ascending
identifier order. Each level pairs neighbours as SHA-256(left || right). When
a level has an odd count the last hash is carried up unchanged, never paired
with itself; previously published roots depend on this rule.
"""

import base64
import hashlib
from typing import Iterable


def leaf_hash(identifier: int) -> bytes:
    return hashlib.sha256(str(identifier).encode("utf-8")).digest()


def node_hash(left: bytes, right: bytes) -> bytes:
    return hashlib.sha256(left + right).digest()


def build_levels(identifiers: Iterable[int]) -> list[list[bytes]]:
    """Return every level of the tree, leaves first and root last."""
    level = [leaf_hash(i) for i in sorted(identifiers)]
    if not level:
        raise ValueError("Cannot build a Merkle tree over an empty set")

    levels = [level]
    while len(level) > 1:
        parents = [node_hash(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)]
        if len(level) % 2:
            parents.append(level[-1])
        level = parents
        levels.append(level)
    return levels


def merkle_root_bytes(identifiers: Iterable[int]) -> bytes:
    return build_levels(identifiers)[-1][0]


def merkle_root(identifiers: Iterable[int]) -> str:
    """Base64 encoded root, the form stored on settlements and sent to clients."""
    return base64.b64encode(merkle_root_bytes(identifiers)).decode("ascii")


def inclusion_proof(identifiers: Iterable[int], identifier: int) -> list[tuple[str, bytes]]:
    """
    Sibling path for ``identifier``.

    Each step is ``("left" | "right", sibling)`` naming the side the sibling
    sits on. Levels where the node was carried up contribute no step.
    """
    ordered = sorted(identifiers)
    if identifier not in ordered:
        raise ValueError(f"{identifier} is not part of this tree")

    index = ordered.index(identifier)
    proof = []
    for level in build_levels(ordered)[:-1]:
        sibling = index ^ 1
        if sibling < len(level):
            proof.append(("left" if sibling < index else "right", level[sibling]))
        index //= 2
    return proof


def verify_proof(identifier: int, proof: list[tuple[str, bytes]], root: str) -> bool:
    current = leaf_hash(identifier)
    for side, sibling in proof:
        current = node_hash(sibling, current) if side == "left" else node_hash(current, sibling)
    return base64.b64encode(current).decode("ascii") == root
