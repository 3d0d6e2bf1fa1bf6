"""
Trellis - multi-tenant referral-tracking CRM.
"""

__version__ = "0.1.0"
