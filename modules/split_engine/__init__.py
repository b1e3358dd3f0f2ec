"""
Split Engine
============

Responsibility:
- Repeated hold-out (Monte-Carlo) train/validation splits.
- Single seeded generator per run for reproducible split sequences.
- Fail-fast rejection of fractions that empty either side.
"""

from .split_engine import ReplicateSplitEngine, ReplicateSplit, generate_splits, validation_size_for

__all__ = ['ReplicateSplitEngine', 'ReplicateSplit', 'generate_splits', 'validation_size_for']
