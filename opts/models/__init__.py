"""
Procurement Routing Engine
Model package.

Exposes the shared Flask-SQLAlchemy instance. Domain models live in the
sibling modules and are imported by the app factory so metadata is complete
before ``db.create_all()`` / Alembic autogenerate run.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
