"""
Milestone Progress Engine
SQLAlchemy models package.

The shared ``db`` handle lives here so that every model module can do
``from app.models import db`` without importing the application factory.
It is bound to the Flask app in ``create_app`` via ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
