"""Yacht and tour booking core: pricing, ledgers and the booking lifecycle."""
