"""
Season Rewards Backend Application

A backend service that closes community voting seasons:
- Reconciles cached vote data with the on-chain voting ledger
- Freezes an auditable snapshot of the final leaderboard
- Computes creator and supporter rewards from the season pool
- Pays rewards out in resumable, idempotent batches
"""

__version__ = "0.1.0"
