"""Bidirectional Azure DevOps <-> Notion reconciliation and sync service."""

__version__ = "0.4.0"
