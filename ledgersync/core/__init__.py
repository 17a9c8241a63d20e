"""
Core data layer module

Provides database connection, ORM models and the sync audit trail.
"""
from . import db
from . import models
from . import audit

__all__ = ['db', 'models', 'audit']
