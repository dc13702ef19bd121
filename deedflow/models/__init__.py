"""
Deed Workflow Service
SQLAlchemy extension instance shared by every model module.

Usage:
    from deedflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
