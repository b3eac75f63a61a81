"""
CLI runner module.

Provides commands:
- extract / ingest: Read Textract output into reviewable invoices
- approve: Record the review decision
- claim / lodge / outcome: Claim generation and status
- payments / aba / submit / reconcile: Payment lifecycle and bank files
- status: Pipeline statistics
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
