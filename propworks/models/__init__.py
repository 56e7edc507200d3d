"""
Property Works — Intervention Workflow Engine
Shared SQLAlchemy handle.

Every model module imports ``db`` from here; the application factory binds it
with ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
