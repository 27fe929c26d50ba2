"""
WSGI entry point for the Milestone Progress Engine.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-demo-booking
"""

from app import create_app

app = create_app()
