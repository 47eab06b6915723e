"""Lookup services consuming the refresh queue."""

from .lookup import ClanLookupService, LookupResult, PlayerLookupService

__all__ = ["ClanLookupService", "LookupResult", "PlayerLookupService"]
