"""
GroupSub Bot - Paid access to private Telegram groups.

A Telegram bot that lets group admins publish payment details, collects payment
receipts from users, and grants time-limited membership that is revoked
automatically when it expires.
"""

__version__ = "1.0.0"
__author__ = "The GroupSub Team"
__description__ = "A Telegram bot for subscription-based group membership"
