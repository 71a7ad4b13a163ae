"""
Extension Attribute Sync - Update Entra ID extension attributes on user accounts.

This package writes extensionAttribute1-15 through Microsoft Graph and falls back
to the Exchange Online admin API when Graph refuses writes to directory-synced users.
"""

__version__ = "1.0.0"
__author__ = "Extension Attribute Sync Team"
