"""
SQL Server / PostgreSQL / MongoDB to PostgreSQL Integration Utilities

This package moves data into PostgreSQL from relational query results,
in-memory records and MongoDB collections, and runs those pipelines as
background jobs.

Modules:
- row_cursor: Streaming row sources (query results, records, documents)
- schema_inference: Derive destination columns from a source
- type_mapping: Map source types to PostgreSQL
- ddl_generator: Generate PostgreSQL DDL statements
- bulk_sink: Batched COPY into a destination table
- data_transfer: Query-to-table transfer and bulk insert
- data_sync: Staging-table delete-insert synchronization
- mongo_transfer: MongoDB collection or aggregation to table
- job_service / job_processor / job_store: Background job orchestration

Configuration (environment or .env):
- JOB_QUEUE_CAPACITY=N: Maximum queued jobs
- JOB_STORE_BACKEND=memory|mongo: Where job records are kept
- LOG_LEVEL=INFO: Root log level for configure_logging()
"""

__version__ = "1.0.0"

__all__ = [
    "row_cursor",
    "schema_inference",
    "type_mapping",
    "ddl_generator",
    "bulk_sink",
    "data_transfer",
    "data_sync",
    "mongo_transfer",
    "job_service",
    "job_processor",
    "job_store",
]
