"""Telegram bot implementation package.

Contains the command handlers, the top-level error handler, per-user
serialization utilities and localized message templates.
"""
