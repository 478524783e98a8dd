"""Backend package providing the REST API and SQL store for goal simulations."""

__all__ = [
    "database",
    "models",
    "schemas",
    "crud",
    "server",
]
