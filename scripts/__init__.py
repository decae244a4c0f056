"""
Scripts for DoseSync
Utility scripts for seeding sample data and reminder maintenance
"""

from .add_sample_medications import add_samples
from .reminder_maintenance import main as reminder_maintenance

__all__ = [
    "add_samples",
    "reminder_maintenance",
]
