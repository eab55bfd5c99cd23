"""Rate limiting layer for the language-learning application."""
