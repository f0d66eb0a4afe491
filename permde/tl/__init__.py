"""Tools module (scanpy-style API)."""

from ._de import permutation_test, rank_groups

__all__ = ["permutation_test", "rank_groups"]
