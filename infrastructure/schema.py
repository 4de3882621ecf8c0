"""
Database Schema: SQLAlchemy Core Table Definitions

The document store keeps every collection in one table, one JSON row per
document, keyed by (collection, id).
"""

from sqlalchemy import JSON, Column, DateTime, Index, MetaData, String, Table, func

metadata = MetaData()

documents_table = Table(
    "documents",
    metadata,
    Column("collection", String(128), primary_key=True),
    Column("id", String(128), primary_key=True),
    Column("data", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    Index("idx_documents_collection", "collection"),
)
