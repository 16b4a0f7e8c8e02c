"""
guardbot - community moderation engine for Telegram groups.
"""
