"""Ledger acceptor: root, nullifiers and message feeds."""

from .ledger import BatchEvent, Ledger, LeafEvent, MessageFeed, StaleRootError

__all__ = ['BatchEvent', 'Ledger', 'LeafEvent', 'MessageFeed', 'StaleRootError']
