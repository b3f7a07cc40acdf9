"""
Communication module for Cohort distributed clustering.

Provides the fixed coordinator/worker wire protocol:
- Resync: point a worker at the latest checkpoint
- Estimate: compute membership for one block of rows
- Maximize: re-estimate one cluster from its membership row
"""

from communication.protocol import Command, ProtocolError
from communication.serialization import serialize_tensor, deserialize_tensor

__version__ = "0.1.0"

__all__ = [
    "Command",
    "ProtocolError",
    "serialize_tensor",
    "deserialize_tensor",
]
