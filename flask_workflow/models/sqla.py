"""
SQLAlchemy integration.

A single ``SQLAlchemy`` instance shared by every workflow model; the
``Workflow`` extension binds it to the application.
"""

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

db = SQLAlchemy()
Model = db.Model

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), 'postgresql')
