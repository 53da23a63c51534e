"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi run-automation-sweep
    gunicorn wsgi:app
"""

from portal import create_app

app = create_app()
