"""Tests for destination handlers and the handler registry."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from reverse_etl.handlers import (
    AirtableHandler,
    DestinationHandler,
    HandlerContext,
    HandlerRegistry,
    build_default_registry,
    link_index_key,
)
from reverse_etl.models import LookupIndex, MappingRule

from conftest import FakeAirtable, make_destination, make_sync

LINK_RULE = {
    "mapping_type": "custom_mapping",
    "from": "company",
    "to": "Company",
    "options": {"linked_table_id": "tblCompanies", "match_field": "Name"},
}


def _company_index():
    index = LookupIndex("tblCompanies", "Name")
    index.add("Acme", "recAcme")
    index.add("Globex", "recGlobex")
    index.add("Globex", "recGlobex2")
    return index


class TestHandlerRegistry:
    """Name to handler resolution."""

    def test_unknown_destination_gets_noop_default(self):
        registry = HandlerRegistry()
        handler = registry.handler_for("Salesforce")
        assert type(handler) is DestinationHandler
        assert handler.transform_custom_mapping(MappingRule(**LINK_RULE), {}, HandlerContext()) is None

    @pytest.mark.asyncio
    async def test_default_handler_builds_no_indexes(self):
        assert await DestinationHandler().build_custom_mapping_indexes(make_sync()) == {}

    def test_default_registry_contains_airtable(self):
        registry = build_default_registry()
        assert isinstance(registry.handler_for("Airtable"), AirtableHandler)
        assert isinstance(registry.handler_for("airtable"), AirtableHandler)
        assert registry.names() == ["airtable"]

    def test_register_custom_handler(self):
        registry = HandlerRegistry()
        handler = DestinationHandler()
        registry.register("Hubspot", handler)
        assert registry.handler_for("HUBSPOT") is handler


class TestAirtableHandler:
    """Linked record resolution."""

    def _context(self, indexes=None):
        return HandlerContext(
            sync=make_sync(),
            run_id="run-1",
            preload_indexes=indexes if indexes is not None else {
                link_index_key("tblCompanies", "Name"): _company_index()
            },
        )

    def test_scalar_value_resolves_to_ids(self):
        result = AirtableHandler().transform_custom_mapping(
            MappingRule(**LINK_RULE), {"company": "Acme"}, self._context()
        )
        assert result == ["recAcme"]

    def test_list_values_are_flattened_and_deduplicated(self):
        result = AirtableHandler().transform_custom_mapping(
            MappingRule(**LINK_RULE), {"company": ["Globex", "Acme", "Globex"]}, self._context()
        )
        assert result == ["recGlobex", "recGlobex2", "recAcme"]

    def test_plain_dict_index_is_accepted(self):
        context = self._context({link_index_key("tblCompanies", "Name"): {"Acme": ["recAcme"]}})
        result = AirtableHandler().transform_custom_mapping(MappingRule(**LINK_RULE), {"company": "Acme"}, context)
        assert result == ["recAcme"]

    @pytest.mark.parametrize("record", [{"company": "Initech"}, {"company": ""}, {}, {"company": None}])
    def test_nothing_resolved_returns_none(self, record):
        assert AirtableHandler().transform_custom_mapping(MappingRule(**LINK_RULE), record, self._context()) is None

    def test_missing_options_return_none(self):
        rule = MappingRule(**{**LINK_RULE, "options": {"linked_table_id": "tblCompanies"}})
        assert AirtableHandler().transform_custom_mapping(rule, {"company": "Acme"}, self._context()) is None

    @pytest.mark.asyncio
    async def test_build_indexes_for_distinct_pairs(self):
        fake = FakeAirtable(rows=[
            {"id": "recAcme", "fields": {"Name": "Acme"}},
            {"id": "recGlobex", "fields": {"Name": "Globex"}},
        ])
        second_rule = {**LINK_RULE, "from": "parent_company", "to": "Parent"}
        sync = make_sync(mappings=[LINK_RULE, second_rule])

        handler = AirtableHandler(destination_factory=lambda: make_destination(fake))
        indexes = await handler.build_custom_mapping_indexes(sync)

        assert list(indexes) == [("tblCompanies", "Name")]
        assert indexes[("tblCompanies", "Name")].first("Globex") == "recGlobex"
        assert len(fake.calls("GET")) == 1
        assert fake.calls("GET")[0].url.path == "/v0/appTestBase/tblCompanies"

    @pytest.mark.asyncio
    async def test_build_indexes_without_link_rules(self):
        factory = MagicMock()
        indexes = await AirtableHandler(destination_factory=factory).build_custom_mapping_indexes(make_sync())
        assert indexes == {}
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_build_indexes_without_credentials(self):
        sync = make_sync(mappings=[LINK_RULE])
        sync.destination.connection_specification = {}
        factory = MagicMock()

        assert await AirtableHandler(destination_factory=factory).build_custom_mapping_indexes(sync) == {}
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_build_indexes_error_degrades_to_empty(self):
        destination = MagicMock()
        destination.__aenter__ = AsyncMock(return_value=destination)
        destination.__aexit__ = AsyncMock(return_value=None)
        destination.link_resolver.return_value.build_full_index = AsyncMock(side_effect=RuntimeError("down"))

        handler = AirtableHandler(destination_factory=lambda: destination)
        assert await handler.build_custom_mapping_indexes(make_sync(mappings=[LINK_RULE])) == {}
