#!/usr/bin/env python3
"""Merkle Mountain Range accumulator for outgoing message hashes.

Nodes are stored in a flat list in canonical (post-order) MMR layout, so the
first ``mmr_size(n)`` nodes always describe the accumulator after ``n``
appends. That makes roots and proofs for any historical leaf count available
from the same list without replaying history.

Pairs are hashed commutatively (smaller digest first), matching the verifier
run by the destination program, so proofs only carry sibling hashes and no
left/right flags.
"""

import logging

from web3 import Web3

from .errors import EmptyAccumulatorError
from .models import Proof

logger = logging.getLogger(__name__)

HASH_SIZE = 32
EMPTY_ROOT = bytes(HASH_SIZE)


def hash_pair(a: bytes, b: bytes) -> bytes:
    """keccak256 of the two digests concatenated in ascending order."""
    if a > b:
        a, b = b, a
    return bytes(Web3.keccak(a + b))


def mmr_size(leaf_count: int) -> int:
    """Number of nodes in an MMR holding ``leaf_count`` leaves."""
    return 2 * leaf_count - leaf_count.bit_count()


def mountain_heights(leaf_count: int) -> list[int]:
    """Heights of the mountains for ``leaf_count`` leaves, left (largest) to right."""
    return [h for h in range(leaf_count.bit_length() - 1, -1, -1) if (leaf_count >> h) & 1]


def _locate_leaf(leaf_index: int, leaf_count: int) -> tuple[int, int, int]:
    """Find the mountain holding a leaf.

    Returns:
        Tuple of (mountain position left-to-right, mountain height, index of
        the leaf inside the mountain)
    """
    leaf_offset = 0
    for position, height in enumerate(mountain_heights(leaf_count)):
        mountain_leaves = 1 << height
        if leaf_index < leaf_offset + mountain_leaves:
            return position, height, leaf_index - leaf_offset
        leaf_offset += mountain_leaves
    raise ValueError(f"Leaf index {leaf_index} out of range for {leaf_count} leaves")


def _bag_peaks(peaks_right_to_left: list[bytes]) -> bytes:
    root = peaks_right_to_left[0]
    for peak in peaks_right_to_left[1:]:
        root = hash_pair(peak, root)
    return root


class MerkleMountainRange:
    """Append-only accumulator exposing a root digest and membership proofs."""

    def __init__(self) -> None:
        self.nodes: list[bytes] = []
        self.leaf_count = 0
        # Node index of every leaf, in append order
        self._leaf_positions: list[int] = []
        self._leaf_indices: dict[bytes, int] = {}

    def __len__(self) -> int:
        return self.leaf_count

    def append(self, leaf_hash: bytes) -> int:
        """
        Append a leaf and merge completed mountains.

        Args:
            leaf_hash: 32-byte leaf digest

        Returns:
            Index of the appended leaf

        Raises:
            ValueError: If the leaf is not exactly 32 bytes
        """
        leaf_hash = bytes(leaf_hash)
        if len(leaf_hash) != HASH_SIZE:
            raise ValueError(f"Leaf hash must be {HASH_SIZE} bytes, got {len(leaf_hash)}")

        current_idx = len(self.nodes)
        self.nodes.append(leaf_hash)
        self._leaf_positions.append(current_idx)

        current = leaf_hash
        height = 0
        # Every set low bit of the old leaf count is a mountain of equal height to merge with
        while (self.leaf_count >> height) & 1:
            left_idx = current_idx - ((1 << (height + 1)) - 1)
            current = hash_pair(self.nodes[left_idx], current)
            self.nodes.append(current)
            current_idx = len(self.nodes) - 1
            height += 1

        leaf_index = self.leaf_count
        self.leaf_count += 1
        self._leaf_indices.setdefault(leaf_hash, leaf_index)
        logger.debug(f"Appended leaf {leaf_index} (0x{leaf_hash.hex()}), {len(self.nodes)} nodes")
        return leaf_index

    def leaf_index(self, leaf_hash: bytes) -> int | None:
        """Index of the first occurrence of ``leaf_hash``, if any."""
        return self._leaf_indices.get(bytes(leaf_hash))

    def peaks(self, leaf_count: int | None = None) -> list[bytes]:
        """Mountain peaks, left to right, for the state after ``leaf_count`` appends."""
        leaf_count = self._check_leaf_count(leaf_count)
        peaks = []
        offset = 0
        for height in mountain_heights(leaf_count):
            offset += (1 << (height + 1)) - 1
            peaks.append(self.nodes[offset - 1])
        return peaks

    def root(self) -> bytes:
        """
        Root over every appended leaf.

        Raises:
            EmptyAccumulatorError: If no leaf has been appended yet
        """
        return self.root_at(self.leaf_count)

    def root_at(self, leaf_count: int) -> bytes:
        """Root of the historical state after ``leaf_count`` appends."""
        leaf_count = self._check_leaf_count(leaf_count)
        if leaf_count == 0:
            raise EmptyAccumulatorError("Cannot compute the root of an empty accumulator")
        return _bag_peaks(list(reversed(self.peaks(leaf_count))))

    def proof(self, leaf_index: int, total_leaf_count: int | None = None) -> Proof:
        """
        Build a membership proof for a leaf.

        Args:
            leaf_index: Index of the leaf to prove
            total_leaf_count: Leaf count of the historical state to prove
                against; defaults to the current state

        Returns:
            Proof whose path holds the leaf's siblings up to its peak,
            followed by the other peaks from right to left

        Raises:
            ValueError: If the index is not covered by the requested state
        """
        total_leaf_count = self._check_leaf_count(total_leaf_count)
        if not 0 <= leaf_index < total_leaf_count:
            raise ValueError(
                f"Leaf index {leaf_index} out of range for {total_leaf_count} leaves"
            )

        own_mountain, height, local_index = _locate_leaf(leaf_index, total_leaf_count)

        path = []
        position = self._leaf_positions[leaf_index]
        for level in range(height):
            subtree_size = (1 << (level + 1)) - 1
            if (local_index >> level) & 1:
                path.append(self.nodes[position - subtree_size])
                position += 1
            else:
                sibling = position + subtree_size
                path.append(self.nodes[sibling])
                position = sibling + 1

        peaks = self.peaks(total_leaf_count)
        for mountain in range(len(peaks) - 1, -1, -1):
            if mountain != own_mountain:
                path.append(peaks[mountain])

        return Proof(path=tuple(path), leaf_index=leaf_index, total_leaf_count=total_leaf_count)

    def _check_leaf_count(self, leaf_count: int | None) -> int:
        if leaf_count is None:
            return self.leaf_count
        if not 0 <= leaf_count <= self.leaf_count:
            raise ValueError(
                f"Leaf count {leaf_count} outside accumulator history (0..{self.leaf_count})"
            )
        return leaf_count


def verify_proof(root: bytes, leaf_hash: bytes, proof: Proof) -> bool:
    """
    Check a proof the same way the destination program does.

    Args:
        root: Expected root of the state after ``proof.total_leaf_count`` appends
        leaf_hash: Leaf being proven
        proof: Proof returned by ``MerkleMountainRange.proof``

    Returns:
        True if the proof recomputes ``root`` and uses every path element
    """
    if proof.total_leaf_count == 0:
        return not proof.path and bytes(root) == EMPTY_ROOT
    if not 0 <= proof.leaf_index < proof.total_leaf_count:
        return False

    path = list(proof.path)
    used = 0
    own_mountain, height, _ = _locate_leaf(proof.leaf_index, proof.total_leaf_count)

    current = bytes(leaf_hash)
    for _ in range(height):
        if used >= len(path):
            return False
        current = hash_pair(current, path[used])
        used += 1

    peaks_right_to_left = []
    for mountain in range(len(mountain_heights(proof.total_leaf_count)) - 1, -1, -1):
        if mountain == own_mountain:
            peaks_right_to_left.append(current)
            continue
        if used >= len(path):
            return False
        peaks_right_to_left.append(path[used])
        used += 1

    if used != len(path):
        return False

    return _bag_peaks(peaks_right_to_left) == bytes(root)
