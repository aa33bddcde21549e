"""
atmd - Account linking and session service

This package implements the account context of a service that signs users in
with their AT Protocol (Bluesky) identity and links a GitHub account to them.

Key Components:
- account: The orchestrator, its collaborator interfaces, models and errors
- atproto: AT Protocol OAuth client used as the Bluesky identity provider
- github: GitHub OAuth / GitHub App token provider
- resolve: Handle and DID resolution utilities
- store: Redis and PostgreSQL implementations of the account stores
- model: SQLAlchemy models backing the PostgreSQL stores
- app: aiohttp web application, configuration and metrics

Architecture Overview:
1. Sign-in: the orchestrator issues a correlation state, redirects to the
   user's authorization server and, on callback, resolves or creates the
   account and writes the session.
2. GitHub linking: the same state pattern guards the GitHub OAuth and App
   installation flows; tokens are stored encrypted and refreshed lazily.
3. Lookups: thin pass-through operations with uniform error handling.
"""
