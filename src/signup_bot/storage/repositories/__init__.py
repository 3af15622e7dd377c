"""
Repository exports.
"""
from signup_bot.storage.repositories.pattern_repo import PatternRepository
from signup_bot.storage.repositories.signup_log_repo import SignupLogRepository

__all__ = [
    "PatternRepository",
    "SignupLogRepository",
]
