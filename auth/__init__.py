"""auth/ -- Authorization & identity engine for Gatehouse.

Credential lifecycle (tokens), row-to-tree denormalization (denormalize),
the permission guard over a route registry (guard, registry), and the schema
bootstrap (schema, bootstrap), over a SQLAlchemy Core store (store).

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
