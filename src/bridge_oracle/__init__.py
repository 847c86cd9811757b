"""
Bridge oracle package.

Relays EVM block state to a message-based destination ledger and submits
withdrawal proofs to it.
"""

from .config import OracleConfig
from .models import BlockDescriptor, RelayState
from .proof_pipeline import ProofSubmitter, normalize_proof
from .relay_oracle import RelayOracle, RelaySession

__all__ = [
    "OracleConfig",
    "RelayOracle",
    "RelaySession",
    "BlockDescriptor",
    "RelayState",
    "ProofSubmitter",
    "normalize_proof",
]
__version__ = "0.1.0"
