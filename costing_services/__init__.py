"""
Costing services: the imperative shell around the pure engines.

Every service takes a SQLAlchemy ``Session`` and flushes within the
caller's transaction; none of them commits.
"""
