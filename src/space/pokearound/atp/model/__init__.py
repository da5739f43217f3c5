"""
Database Models

This package defines the database models used by the PokeAround AT Protocol service.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- oauth.py: Stored OAuth sessions, with secrets encrypted at rest
- links.py: Curated links and their publication state
- health.py: Health monitoring gauge

The models use SQLAlchemy's async interface. Stores wrap the queries that the OAuth
flow and the sync worker need.
"""
