"""
Database Models

SQLAlchemy ORM models backing the PostgreSQL stores in `social.atmd.store.sql`.

Key Models:
- base.py: Declarative base and shared column types
- account.py: Users, their profiles and their GitHub connections

Relationships:
- User: One row per AT Protocol identity (unique DID)
- Profile: One-to-one with User, replaced wholesale on profile sync
- GitHubConnectionRecord: At most one per User, tokens encrypted with Fernet

Rows referencing a user are removed with it (ON DELETE CASCADE).
"""
