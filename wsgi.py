"""
WSGI / Flask-Migrate entry point.

Usage:
    flask db upgrade
    flask escalation-sweep
    gunicorn wsgi:app
"""

from whistle import create_app

app = create_app()
