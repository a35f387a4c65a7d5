"""
WSGI entry point (gunicorn app.wsgi:app).
"""

from app.cdms import create_app

app = create_app()
