"""
Repository layer for data access.

Repositories encapsulate SQLAlchemy queries for each ledger (route catalog, pallets,
stage progress, assignments, buffer cells, defects). They flush but never commit;
the routing services own transaction boundaries.
"""
