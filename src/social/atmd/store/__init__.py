"""
Store Implementations

- redis.py: Correlation state and session stores keyed by request context
- sql.py: Account and GitHub connection stores backed by PostgreSQL
"""
