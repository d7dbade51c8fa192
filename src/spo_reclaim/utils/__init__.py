"""
Shared helpers: retry, progress ledger, run report
"""

from .db_manager import ProgressLedger
from .report import BatchReporter
from .retry import Retrier, is_throttling_error

__all__ = [
    'ProgressLedger',
    'BatchReporter',
    'Retrier',
    'is_throttling_error'
]
