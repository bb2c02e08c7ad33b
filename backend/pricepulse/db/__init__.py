"""Relational store lifecycle."""

from pricepulse.db.session import Database

__all__ = ["Database"]
