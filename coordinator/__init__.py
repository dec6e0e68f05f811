"""Coordinator-side batch processing and voter key registry."""

from .coordinator import Coordinator, BatchStatus, BatchOutcome, PreparedBatch
from .key_registry import (
    KeyRegistry,
    KeyRegistration,
    generate_random_val,
    rotation_digest,
)

__all__ = [
    'Coordinator',
    'BatchStatus',
    'BatchOutcome',
    'PreparedBatch',
    'KeyRegistry',
    'KeyRegistration',
    'generate_random_val',
    'rotation_digest',
]
