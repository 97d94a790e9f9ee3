"""
WSGI / Flask-Migrate entry point.

Usage:
    flask db upgrade
    flask opts seed
    flask opts check-overdue
"""

from opts import create_app

app = create_app()
