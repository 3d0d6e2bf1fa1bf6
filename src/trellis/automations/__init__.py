"""
Scheduled jobs for Trellis.
"""

from trellis.automations.batch_processor import BatchProcessor

__all__ = [
    "BatchProcessor",
]
