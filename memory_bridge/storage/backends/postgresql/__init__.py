from .postgresql_backend import DEFAULT_SCHEMA, PostgreSQLBackend, mask_connection_string

__all__ = ["PostgreSQLBackend", "DEFAULT_SCHEMA", "mask_connection_string"]
