"""
SQLAlchemy ORM model for the path-addressable tree store.

Tables
------
* ``tree_nodes`` -- one row per *leaf* of the tree.  ``path`` is the
  materialised ``/``-separated path, ``value`` the canonical JSON encoding of
  the leaf (compact separators, sorted keys) so equality on the text column
  is equality on the value, which the compare-and-swap relies on.

Indexes
-------
* **Primary key** on ``path``; subtree reads are escaped prefix matches
  (``path LIKE 'a/b/%'``), re-checked case-sensitively in Python because
  SQLite's LIKE folds ASCII case.
"""

from sqlalchemy import Column, DateTime, String, Text, func

from .database import Base


class TreeNodeModel(Base):
    __tablename__ = "tree_nodes"

    path = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
