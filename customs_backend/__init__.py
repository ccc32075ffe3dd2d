"""Customs Desk backend: declaration sync, helpdesk tickets and dashboard analytics."""

__version__ = "1.3.0"
