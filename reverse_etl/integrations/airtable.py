"""Airtable destination connector."""

import logging
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Sequence

from reverse_etl.integrations.base import BaseDestination, DestinationError, WriteResult
from reverse_etl.integrations.link_resolver import AirtableLinkResolver
from reverse_etl.integrations.registry import ConnectorRegistry
from reverse_etl.models import (
    ControlMessage,
    DestinationSyncMode,
    LogLevel,
    LogMessage,
    SyncConfig,
    TrackingReport,
)
from reverse_etl.services.lookup_cache import RunLookupCache

logger = logging.getLogger(__name__)

RECORD_ID_FIELD = "recordid"
UNIQUE_IDENTIFIER_MISSING = "unique_identifier not configured"


@dataclass
class BatchResult:
    """Outcome of one POST or PATCH, logs in the order of the records sent."""
    success: int = 0
    failed: int = 0
    logs: List[LogMessage] = field(default_factory=list)
    created_records: List[Dict[str, Any]] = field(default_factory=list)


def chunked(records: Sequence[Any], size: int) -> Iterator[List[Any]]:
    for start in range(0, len(records), size):
        yield list(records[start:start + size])


def invalid_unique_identifier_message(sync: SyncConfig) -> str:
    errors = sync.validation_errors()
    return "; ".join(errors) if errors else "unique_identifier_config is invalid"


def filter_system_fields(record: Dict[str, Any]) -> Dict[str, Any]:
    """Drop read-only Airtable fields such as recordId."""
    return {key: value for key, value in record.items() if str(key).lower() != RECORD_ID_FIELD}


@ConnectorRegistry.register("Airtable")
class AirtableDestination(BaseDestination):
    """Writes records to an Airtable table with insert, upsert or update semantics."""

    connector_name = "airtable"

    @property
    def max_chunk_size(self) -> int:
        return self.config["max_chunk_size"]

    def auth_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def link_resolver(self, api_key: str, base_id: str) -> AirtableLinkResolver:
        return AirtableLinkResolver(
            api_key=api_key,
            base_id=base_id,
            request=self.make_api_request,
            base_url=self.config["api_base_url"],
            page_size=self.config["page_size"],
        )

    async def write(
        self,
        sync: SyncConfig,
        records: List[Dict[str, Any]],
        action: str = "create",
        *,
        lookup_cache: Optional[RunLookupCache] = None,
    ) -> WriteResult:
        """Write records and report per-record outcomes. Never raises."""
        try:
            connection = sync.destination.connection_specification
            api_key = connection.get("api_key")
            base_id = connection.get("base_id")
            url = sync.stream.url
            table_id = sync.stream.table_id

            mode = sync.destination_sync_mode
            if mode == DestinationSyncMode.UPSERT:
                return await self._process_upsert(records, api_key, base_id, table_id, url, sync, lookup_cache)
            if mode == DestinationSyncMode.UPDATE:
                return await self._process_update(records, api_key, base_id, table_id, url, sync)
            return await self._process_insert(records, url, api_key, sync)
        except Exception as e:
            logger.error(
                f"Airtable write failed: {e}",
                exc_info=True,
                extra={"context": "AIRTABLE:RECORD:WRITE:EXCEPTION", "sync_id": sync.sync_id,
                       "sync_run_id": sync.sync_run_id},
            )
            return ControlMessage(
                type="full_refresh",
                status="failed",
                meta={"error": str(e), "context": "AIRTABLE:RECORD:WRITE:EXCEPTION"},
            )

    def _fail_all(self, records, method: str, url: str, message: str, sync: SyncConfig) -> TrackingReport:
        """Fail every record without contacting Airtable."""
        logger.error(f"Rejecting {len(records)} records: {message}",
                     extra={"sync_id": sync.sync_id, "sync_run_id": sync.sync_run_id})
        report = TrackingReport(failed=len(records))
        report.logs = [
            self.create_log_for_record(r, LogLevel.ERROR, {"method": method, "url": url}, message)
            for r in records
        ]
        return report

    async def _process_insert(self, records, url, api_key, sync: SyncConfig) -> TrackingReport:
        report = TrackingReport()
        for chunk in chunked(records, self.max_chunk_size):
            result = await self._batch_create([filter_system_fields(r) for r in chunk], url, api_key, sync)
            report.success += result.success
            report.failed += result.failed
            report.logs.extend(result.logs)
        return report

    def _resolve_lookup_cache(self, sync: SyncConfig, lookup_cache: Optional[RunLookupCache]) -> RunLookupCache:
        run_id = str(sync.sync_run_id or "")
        if lookup_cache is not None and lookup_cache.run_id == run_id:
            return lookup_cache
        if lookup_cache is not None:
            logger.warning(
                f"Ignoring lookup cache of run {lookup_cache.run_id} for run {run_id}",
                extra={"sync_id": sync.sync_id},
            )
        return RunLookupCache(run_id)

    async def _process_upsert(self, records, api_key, base_id, table_id, url, sync: SyncConfig,
                              lookup_cache: Optional[RunLookupCache]) -> TrackingReport:
        unique_config = sync.unique_identifier()
        if unique_config is None:
            if sync.has_unique_identifier_config:
                return self._fail_all(records, "UPSERT", url, invalid_unique_identifier_message(sync), sync)
            logger.info("No unique identifier configured, upsert falls back to insert",
                        extra={"sync_id": sync.sync_id})
            return await self._process_insert(records, url, api_key, sync)

        destination_field = unique_config.destination_field
        use_record_id = destination_field.lower() == RECORD_ID_FIELD
        cache = None if use_record_id else self._resolve_lookup_cache(sync, lookup_cache)
        resolver = self.link_resolver(api_key, base_id)

        async def build_index():
            return await resolver.build_full_index(table_id, destination_field)

        report = TrackingReport()
        for chunk in chunked(records, self.max_chunk_size):
            slots: List[Optional[LogMessage]] = [None] * len(chunk)
            try:
                if use_record_id:
                    creates, updates = self._partition(chunk, destination_field, lambda value: value)
                    if creates:
                        created = await self._batch_create([f for _, f in creates], url, api_key, sync)
                        self._fold(report, created, slots, [pos for pos, _ in creates])
                else:
                    async with cache.checkout(table_id, destination_field, build_index) as index:
                        creates, updates = self._partition(chunk, destination_field, index.first)
                        if creates:
                            created = await self._batch_create([f for _, f in creates], url, api_key, sync)
                            self._fold(report, created, slots, [pos for pos, _ in creates])
                            # Later chunks of this run must see the rows created here
                            for created_record in created.created_records:
                                fields = created_record.get("fields") or {}
                                index.add_values(fields.get(destination_field), created_record.get("id"))

                if updates:
                    updated = await self._batch_update([u for _, u in updates], url, api_key, sync)
                    self._fold(report, updated, slots, [pos for pos, _ in updates])
            except Exception as e:
                logger.error(
                    f"Airtable upsert chunk failed: {e}",
                    extra={"context": "AIRTABLE:UPSERT:EXCEPTION", "sync_id": sync.sync_id,
                           "sync_run_id": sync.sync_run_id},
                )
                for pos, record in enumerate(chunk):
                    if slots[pos] is None:
                        report.failed += 1
                        slots[pos] = self.create_log_for_record(
                            record, LogLevel.ERROR, {"method": "UPSERT", "url": url}, str(e)
                        )
            report.logs.extend(log for log in slots if log is not None)

        return report

    async def _process_update(self, records, api_key, base_id, table_id, url, sync: SyncConfig) -> TrackingReport:
        unique_config = sync.unique_identifier()
        if unique_config is None:
            message = UNIQUE_IDENTIFIER_MISSING
            if sync.has_unique_identifier_config:
                message = invalid_unique_identifier_message(sync)
            return self._fail_all(records, "UPDATE", url, message, sync)

        report = TrackingReport()

        destination_field = unique_config.destination_field
        use_record_id = destination_field.lower() == RECORD_ID_FIELD

        id_map: Dict[Any, List[str]] = {}
        if not use_record_id:
            id_map = await self._build_lookup_index(records, destination_field, api_key, base_id, table_id)

        def resolve_id(value: Any) -> Optional[str]:
            if use_record_id:
                return value
            if not isinstance(value, Hashable):
                return None
            ids = id_map.get(value) or []
            return ids[0] if ids else None

        for chunk in chunked(records, self.max_chunk_size):
            slots: List[Optional[LogMessage]] = [None] * len(chunk)
            try:
                creates, updates = self._partition(chunk, destination_field, resolve_id)
                for pos, fields in creates:
                    report.failed += 1
                    missing_value = chunk[pos].get(destination_field)
                    slots[pos] = self.create_log_for_record(
                        chunk[pos], LogLevel.ERROR, {"method": "UPDATE", "url": url},
                        f"Record not found: {destination_field}={missing_value}",
                    )
                if updates:
                    updated = await self._batch_update([u for _, u in updates], url, api_key, sync)
                    self._fold(report, updated, slots, [pos for pos, _ in updates])
            except Exception as e:
                logger.error(
                    f"Airtable update chunk failed: {e}",
                    extra={"context": "AIRTABLE:UPDATE:EXCEPTION", "sync_id": sync.sync_id,
                           "sync_run_id": sync.sync_run_id},
                )
                for pos, record in enumerate(chunk):
                    if slots[pos] is None:
                        report.failed += 1
                        slots[pos] = self.create_log_for_record(
                            record, LogLevel.ERROR, {"method": "UPDATE", "url": url}, str(e)
                        )
            report.logs.extend(log for log in slots if log is not None)

        return report

    async def _build_lookup_index(self, records, field_name, api_key, base_id, table_id) -> Dict[Any, List[str]]:
        """Resolve ids for just the values present in this batch."""
        values = []
        for record in records:
            value = record.get(field_name)
            if value is not None and isinstance(value, Hashable) and value not in values:
                values.append(value)
        if not values:
            return {}

        try:
            return await self.link_resolver(api_key, base_id).find_ids_by_values(table_id, field_name, values)
        except Exception as e:
            logger.error(f"Airtable lookup index failed: {e}", extra={"context": "AIRTABLE:LOOKUP_INDEX:EXCEPTION"})
            return {}

    def _partition(self, chunk, destination_field, resolve_id):
        """Split a chunk into (position, fields) creates and (position, {id, fields}) updates."""
        creates, updates = [], []
        for pos, record in enumerate(chunk):
            unique_value = record.get(destination_field)
            record_id = resolve_id(unique_value) if unique_value is not None else None
            if record_id:
                updates.append((pos, {"id": record_id, "fields": filter_system_fields(record)}))
            else:
                creates.append((pos, filter_system_fields(record)))
        return creates, updates

    @staticmethod
    def _fold(report: TrackingReport, result: BatchResult, slots, positions) -> None:
        report.success += result.success
        report.failed += result.failed
        for pos, log in zip(positions, result.logs):
            slots[pos] = log

    async def _batch_create(self, records: List[Dict[str, Any]], url, api_key, sync: SyncConfig) -> BatchResult:
        payload = {"records": [{"fields": r} for r in records]}
        request = {"method": "POST", "url": url, "payload": payload}

        try:
            response = await self.make_api_request(
                "POST", url,
                headers=self.auth_headers(api_key),
                params={"typecast": "true"},
                json=payload,
            )
            if not response.is_success:
                raise DestinationError(f"Airtable write failed response={response.text}")

            try:
                created_records = response.json().get("records") or []
            except ValueError:
                created_records = []

            return BatchResult(
                success=len(records),
                created_records=created_records,
                logs=[self.create_log_for_record(r, LogLevel.INFO, request, response.text) for r in records],
            )
        except Exception as e:
            logger.error(
                f"Airtable create failed: {e}",
                extra={"context": "AIRTABLE:INSERT:EXCEPTION", "sync_id": sync.sync_id,
                       "sync_run_id": sync.sync_run_id},
            )
            return BatchResult(
                failed=len(records),
                logs=[self.create_log_for_record(r, LogLevel.ERROR, request, str(e)) for r in records],
            )

    async def _batch_update(self, updates: List[Dict[str, Any]], url, api_key, sync: SyncConfig) -> BatchResult:
        payload = {"records": updates}
        request = {"method": "PATCH", "url": url, "payload": payload}

        try:
            response = await self.make_api_request(
                "PATCH", url,
                headers=self.auth_headers(api_key),
                params={"typecast": "true"},
                json=payload,
            )
        except Exception as e:
            logger.error(
                f"Airtable update failed: {e}",
                extra={"context": "AIRTABLE:BATCH_UPDATE:EXCEPTION", "sync_id": sync.sync_id,
                       "sync_run_id": sync.sync_run_id},
            )
            return BatchResult(
                failed=len(updates),
                logs=[self.create_log_for_record(u["fields"], LogLevel.ERROR, request, str(e)) for u in updates],
            )

        if response.is_success:
            return BatchResult(
                success=len(updates),
                logs=[self.create_log_for_record(u["fields"], LogLevel.INFO, request, response.text) for u in updates],
            )
        return BatchResult(
            failed=len(updates),
            logs=[self.create_log_for_record(u["fields"], LogLevel.ERROR, request, response.text) for u in updates],
        )
