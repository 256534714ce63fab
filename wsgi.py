"""
PythonAnywhere WSGI entry point.

In the PythonAnywhere Web tab:
  - Source code:    /home/<your-username>/prayer-cards
  - Working dir:    /home/<your-username>/prayer-cards
  - WSGI file:      /home/<your-username>/prayer-cards/wsgi.py
  - Virtualenv:     /home/<your-username>/prayer-cards/.venv

Set SECRET_KEY, DATABASE_URL and APP_TIMEZONE in the same tab.
"""
import sys
import os
import logging

# Make sure the project directory is on the path
project_dir = os.path.dirname(os.path.abspath(__file__))
if project_dir not in sys.path:
    sys.path.insert(0, project_dir)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from app import app as application  # noqa: E402,F401  (PythonAnywhere looks for 'application')
