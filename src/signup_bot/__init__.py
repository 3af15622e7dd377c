"""
Class Auto-Signup Bot.

Watches a Fisikal-hosted class schedule for occurrences that match the
recurring patterns a member tracks, and registers (or joins the waitlist)
as soon as each occurrence's booking window opens. Attempts are retried on
every scheduler tick until they succeed or the class starts.
"""

__version__ = "0.1.0"
