"""
Metering limits

Bounds applied to traffic reported by nodes before it reaches the quota ledger.
"""

import os


GIB = 1024 * 1024 * 1024

# A single ledger write never adds more than this many bytes. Larger deltas
# (corrupted or hostile reports) are truncated, not rejected.
MAX_DELTA_PER_CALL: int = int(os.getenv("MAX_DELTA_PER_CALL", str(10 * GIB)))
