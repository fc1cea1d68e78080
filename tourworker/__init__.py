"""Walkthrough video worker: room classification, per-room clips, final composition."""
