"""Networking rounds: round lifecycle, registration state machine and matching."""
