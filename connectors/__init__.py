"""
Source connectors and the registry that tracks them.

Modules:
    base: Connector contract, connection state machine and parameter helpers
    incremental: Continuation tokens and tracking-field bookkeeping
    registry: Connector registrations, lookup by id and source type, discovery
    factory: Instantiation of registered connectors
    relational: Shared machinery for SQL databases (catalog, paging, incremental)
    postgres: PostgreSQL connector (psycopg)
    mysql: MySQL connector (PyMySQL)
    mssql: SQL Server connector with change tracking (pymssql)
    file_repository: Files on a local or mounted directory tree
    sample: Synthetic in-memory source for demos and tests

Usage:
    from connectors.registry import create_default_registry
    from connectors.factory import ConnectorFactory

Example:
    registry = create_default_registry()
    factory = ConnectorFactory(registry)
    connector = factory.create("postgresql-connector")

    result = await connector.connect({"host": "db", "database": "crm", ...})
    if result.success:
        extraction = await connector.extract_data(ExtractionParameters(target_structures=["public.customers"]))
"""

__all__ = [
    "DataSourceConnector",
    "ConnectionState",
    "ConnectorListener",
    "ConnectorRegistry",
    "ConnectorRegistration",
    "ConnectorFactory",
    "ContinuationToken",
    "OffsetToken",
    "TrackingState",
    "PostgreSqlConnector",
    "MySqlConnector",
    "SqlServerConnector",
    "FileRepositoryConnector",
    "SampleConnector",
]
