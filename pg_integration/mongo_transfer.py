"""
MongoDB Transfer Module

Streams documents from a MongoDB collection (filter or aggregation pipeline)
into a PostgreSQL table. The column set is inferred from the head of the
cursor; the sampled head is then replayed in front of the rest of the cursor,
so every document is read from MongoDB exactly once.

A passthrough variant stores each document whole, as Extended JSON, in a
``<table>_JSON`` table with a fixed layout.
"""

import itertools
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from bson import json_util
from bson.errors import InvalidBSON

from pg_integration.bulk_sink import BulkSink
from pg_integration.connections import (
    close_quietly,
    connect_destination,
    connect_mongo,
    provider_error_code,
    rollback_quietly,
)
from pg_integration.ddl_generator import JSON_DATA_COLUMN, DDLGenerator
from pg_integration.identifiers import validate_identifiers
from pg_integration.models import MongoOptions, ProgressCallback, report_progress
from pg_integration.results import MongoTransferResult
from pg_integration.row_cursor import DocumentRowCursor, JsonDocumentRowCursor, RowCursor
from pg_integration.schema_inference import infer_document_columns

logger = logging.getLogger(__name__)

JSON_TABLE_SUFFIX = '_JSON'

NO_DOCUMENTS_FOR_FILTER = "No documents found matching the filter"
NO_DOCUMENTS_FOR_PIPELINE = "No documents returned from aggregation pipeline"
NO_COLUMNS_INFERRED = "No valid columns found after schema inference"


def _elapsed_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)


def parse_filter(filter_json: Optional[str]) -> Dict[str, Any]:
    """
    Parse an Extended JSON filter. Blank means match everything.

    Raises:
        ValueError: If the text is not a JSON object
    """
    if not filter_json or not filter_json.strip():
        return {}
    try:
        parsed = json_util.loads(filter_json)
    except (ValueError, TypeError, InvalidBSON) as e:
        raise ValueError(f"Invalid filter JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError("Filter must be a JSON object")
    return parsed


def parse_pipeline(pipeline_json: str) -> List[Dict[str, Any]]:
    """
    Parse an Extended JSON aggregation pipeline.

    Raises:
        ValueError: If the text is not a non-empty JSON array of objects
    """
    try:
        parsed = json_util.loads(pipeline_json or '')
    except (ValueError, TypeError, InvalidBSON) as e:
        raise ValueError(f"Invalid aggregation pipeline JSON: {e}") from e
    if not isinstance(parsed, list) or not parsed:
        raise ValueError("Aggregation pipeline must be a non-empty JSON array")
    if not all(isinstance(stage, dict) for stage in parsed):
        raise ValueError("Every aggregation pipeline stage must be a JSON object")
    return parsed


def json_table_name(target_table: str) -> str:
    return f"{target_table}{JSON_TABLE_SUFFIX}"


class MongoTransferService:
    """Transfer MongoDB documents into PostgreSQL tables."""

    def __init__(self, ddl_generator: Optional[DDLGenerator] = None):
        self.ddl = ddl_generator or DDLGenerator()

    def transfer(
        self,
        mongo_connection_string: str,
        database: str,
        collection: str,
        target_connection_string: str,
        target_table: str,
        filter_json: Optional[str] = None,
        pipeline_json: Optional[str] = None,
        options: Optional[MongoOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MongoTransferResult:
        """
        Transfer the documents matching a filter into a relational table.

        When ``pipeline_json`` is given the aggregation pipeline is used and
        the filter is ignored.

        Args:
            mongo_connection_string: ``mongodb://`` or ``mongodb+srv://`` URL
            database: Source database name
            collection: Source collection name
            target_connection_string: PostgreSQL destination
            target_table: ``table`` or ``schema.table``
            filter_json: Extended JSON filter; blank selects every document
            pipeline_json: Extended JSON aggregation pipeline
            options: Flattening, filtering, mapping and load options
            cancel_event: Stops the run at the next document or batch when set
            progress: Receives coarse checkpoints as (percent, message)

        Returns:
            MongoTransferResult; failures are reported in the result, never raised
        """
        if pipeline_json and pipeline_json.strip():
            return self.transfer_with_aggregation(
                mongo_connection_string, database, collection, pipeline_json,
                target_connection_string, target_table, options, cancel_event, progress,
            )

        options = options or MongoOptions()
        try:
            query = parse_filter(filter_json)
        except ValueError as e:
            return MongoTransferResult.failure(f"Validation failed: {e}", target_table=target_table)

        def open_cursor(mongo_collection):
            return mongo_collection.find(query, batch_size=options.batch_size,
                                         max_time_ms=options.timeout * 1000 if options.timeout else None)

        return self._run(mongo_connection_string, database, collection, target_connection_string,
                         target_table, open_cursor, NO_DOCUMENTS_FOR_FILTER, options, cancel_event,
                         progress, as_json=False)

    def transfer_with_aggregation(
        self,
        mongo_connection_string: str,
        database: str,
        collection: str,
        pipeline_json: str,
        target_connection_string: str,
        target_table: str,
        options: Optional[MongoOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MongoTransferResult:
        """Transfer the output of an aggregation pipeline into a relational table."""
        options = options or MongoOptions()
        try:
            pipeline = parse_pipeline(pipeline_json)
        except ValueError as e:
            return MongoTransferResult.failure(f"Validation failed: {e}", target_table=target_table)

        return self._run(mongo_connection_string, database, collection, target_connection_string,
                         target_table, self._aggregate_opener(pipeline, options),
                         NO_DOCUMENTS_FOR_PIPELINE, options, cancel_event, progress, as_json=False)

    def transfer_as_json(
        self,
        mongo_connection_string: str,
        database: str,
        collection: str,
        target_connection_string: str,
        target_table: str,
        filter_json: Optional[str] = None,
        pipeline_json: Optional[str] = None,
        options: Optional[MongoOptions] = None,
        cancel_event: Optional[threading.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> MongoTransferResult:
        """
        Store each document whole as Extended JSON in ``<target_table>_JSON``.

        The table has a fixed layout (``id``, ``json_data``, ``created_at``)
        and is always created if missing. No schema inference takes place and
        flattening, filtering and mapping options are ignored.
        """
        options = options or MongoOptions()
        try:
            if pipeline_json and pipeline_json.strip():
                opener = self._aggregate_opener(parse_pipeline(pipeline_json), options)
                empty_warning = NO_DOCUMENTS_FOR_PIPELINE
            else:
                query = parse_filter(filter_json)
                empty_warning = NO_DOCUMENTS_FOR_FILTER

                def opener(mongo_collection):
                    return mongo_collection.find(query, batch_size=options.batch_size,
                                                 max_time_ms=options.timeout * 1000 if options.timeout else None)
        except ValueError as e:
            return MongoTransferResult.failure(f"Validation failed: {e}", target_table=json_table_name(target_table))

        return self._run(mongo_connection_string, database, collection, target_connection_string,
                         json_table_name(target_table), opener, empty_warning, options, cancel_event,
                         progress, as_json=True)

    @staticmethod
    def _aggregate_opener(pipeline: List[Dict[str, Any]], options: MongoOptions) -> Callable:
        def open_cursor(mongo_collection):
            kwargs = {'batchSize': options.batch_size}
            if options.timeout:
                kwargs['maxTimeMS'] = options.timeout * 1000
            return mongo_collection.aggregate(pipeline, **kwargs)
        return open_cursor

    @staticmethod
    def _validate(target_table: str, options: MongoOptions, as_json: bool) -> List[str]:
        if as_json:
            return validate_identifiers(table_name=target_table).errors
        mappings = options.mapping_dict
        return validate_identifiers(
            table_name=target_table,
            column_names=list(mappings.values()) if mappings else None,
        ).errors

    def _run(
        self,
        mongo_connection_string: str,
        database: str,
        collection: str,
        target_connection_string: str,
        target_table: str,
        open_cursor: Callable,
        empty_warning: str,
        options: MongoOptions,
        cancel_event: Optional[threading.Event],
        progress: Optional[ProgressCallback],
        as_json: bool,
    ) -> MongoTransferResult:
        start_time = time.time()
        result = MongoTransferResult(target_table=target_table)

        errors = self._validate(target_table, options, as_json)
        if not database or not collection:
            errors.append("Database and collection names are required")
        if errors:
            return MongoTransferResult.failure(f"Validation failed: {'; '.join(errors)}", target_table=target_table)

        logger.info(f"Starting MongoDB transfer: {database}.{collection} -> {target_table}")
        client = documents = target_conn = None
        try:
            client = connect_mongo(mongo_connection_string, options.timeout)
            documents = open_cursor(client[database][collection])

            # The sampled head is replayed in front of the rest of the cursor
            sample = list(itertools.islice(documents, options.schema_sample_size))
            if not sample:
                result.warnings.append(empty_warning)
                logger.info(f"{empty_warning} ({database}.{collection})")
                result.elapsed_ms = _elapsed_ms(start_time)
                return result

            if as_json:
                row_cursor: RowCursor = JsonDocumentRowCursor(itertools.chain(sample, documents),
                                                              JSON_DATA_COLUMN, cancel_event)
                mapping = None
                result.columns = [JSON_DATA_COLUMN]
            else:
                report_progress(progress, 20, "Inferring schema...")
                columns = infer_document_columns(sample, options, result.warnings)
                if not columns:
                    result.warnings.append(NO_COLUMNS_INFERRED)
                    logger.warning(f"{NO_COLUMNS_INFERRED} ({database}.{collection})")
                    result.elapsed_ms = _elapsed_ms(start_time)
                    return result
                field_mappings = options.mapping_dict
                target_names = [field_mappings.get(column.name, column.name) for column in columns]
                mapping = list(zip([column.name for column in columns], target_names))
                result.columns = target_names
                row_cursor = DocumentRowCursor(itertools.chain(sample, documents), columns, options, cancel_event)

            target_conn = connect_destination(target_connection_string, options.timeout, options.use_transaction)
            with target_conn.cursor() as db_cursor:
                if as_json:
                    db_cursor.execute(self.ddl.generate_json_table(target_table))
                    result.warnings.append(f"Table '{target_table}' created or verified")
                elif options.create_table_if_not_exists:
                    db_cursor.execute(self.ddl.generate_create_table(target_table, columns, column_names=target_names))
                    result.warnings.append(f"Table '{target_table}' created or verified")

                if options.truncate_target_table:
                    db_cursor.execute(self.ddl.generate_truncate_table(target_table))
                    result.warnings.append(f"Table '{target_table}' truncated")

            report_progress(progress, 30, f"Streaming documents to {target_table}...")
            sink = BulkSink(target_conn, target_table, mapping, options.batch_size, options.timeout, cancel_event)
            rows_written = sink.write(row_cursor)

            if options.use_transaction:
                report_progress(progress, 90, "Committing transaction...")
                target_conn.commit()

            result.total_rows_written = rows_written
            result.failed_documents = row_cursor.failed_count()
            result.total_documents_read = rows_written + result.failed_documents
            result.elapsed_ms = _elapsed_ms(start_time)
            if result.failed_documents:
                logger.warning(f"{result.failed_documents:,} documents failed conversion and were skipped")
            logger.info(
                f"MongoDB transfer to {target_table} complete: {rows_written:,} rows "
                f"from {result.total_documents_read:,} documents in {result.elapsed_ms:,} ms"
            )
            return result
        except Exception as e:
            logger.error(f"MongoDB transfer to {target_table} failed: {e}", exc_info=True)
            rollback_quietly(target_conn)
            return MongoTransferResult.failure(
                str(e),
                provider_error_code(e),
                target_table=target_table,
                elapsed_ms=_elapsed_ms(start_time),
                warnings=result.warnings,
            )
        finally:
            if documents is not None and hasattr(documents, 'close'):
                try:
                    documents.close()
                except Exception as e:
                    logger.warning(f"Error closing MongoDB cursor: {e}")
            close_quietly(target_conn)
            close_quietly(client)
