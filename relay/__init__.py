"""Relay: streams model responses into Telegram with tool confirmations."""
