"""Fieldbook - appointment and quote booking for field-service businesses"""

__version__ = "1.0.0"
