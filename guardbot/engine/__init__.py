"""
Moderation decision engine.
"""
