"""Ticket tracker and version-control providers."""

from taskloop.providers.base import TicketTracker, VersionControl
from taskloop.providers.jujutsu import JujutsuVersionControl
from taskloop.providers.tk import TkTicketTracker

__all__ = ["JujutsuVersionControl", "TicketTracker", "TkTicketTracker", "VersionControl"]
