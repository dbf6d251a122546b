"""
Contact form gateway: validates landing page submissions and syncs them to Zoho CRM.
"""

__version__ = "1.0.0"
