"""chainvault - non-custodial multi-chain wallet engine.

Key custody with encrypted sessions, raw JSON-RPC transport, a minimal ABI
codec, EIP-1559 gas estimation, transaction signing and broadcast, balance
aggregation and multi-chain registry registration.
"""

__version__ = "0.1.0"
