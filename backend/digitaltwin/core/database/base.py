# backend/digitaltwin/core/database/base.py
"""
SQLAlchemy declarative base shared by every model.
"""

from sqlalchemy.orm import declarative_base

# Declarative base for all models
Base = declarative_base()
