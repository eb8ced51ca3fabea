"""
SQL practice notes service.

A FastAPI application that keeps each user's notes and attempts in their own
backend project, while the shared project only handles sign-in and remembers
where each user's project lives.
"""

__version__ = "0.1.0"
