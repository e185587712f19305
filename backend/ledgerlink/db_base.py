"""Declarative base shared by all LedgerLink models."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
