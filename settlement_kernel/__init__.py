"""
settlement_kernel -- shared foundation for the settlement engine.

Clock, money helpers, workflow value objects, typed exceptions,
structured logging and the SQLAlchemy declarative base.  Nothing in
this package imports from engines, modules, batch or config.
"""
