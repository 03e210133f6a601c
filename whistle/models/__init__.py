"""
Whistle Core
SQLAlchemy models.

All models share the single ``db`` instance defined here; import it with
``from whistle.models import db``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
