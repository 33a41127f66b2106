"""
Tests for automatic table creation.
"""

import logging
from unittest.mock import AsyncMock

import pytest

from vertector_keyrouter.backend import StoreBackend
from vertector_keyrouter.errors import InvalidColumnSpecError, ProvisioningFailedError
from vertector_keyrouter.observability import EnhancedMetrics
from vertector_keyrouter.provisioner import TableProvisioner, normalize_columns
from vertector_keyrouter.schema import CatalogColumn, ColumnSpec, ColumnType


DEFAULT_COLUMNS = [ColumnSpec(name="pk"), ColumnSpec(name="k1"), ColumnSpec(name="k2"), ColumnSpec(name="k3")]


@pytest.mark.unit
class TestNormalizeColumns:
    """Test column spec validation before any DDL."""

    def test_accepts_dicts(self):
        specs = normalize_columns("user", [{"name": "pk", "type": "uuid"}, {"name": "attr"}], "data")
        assert specs == [ColumnSpec(name="pk", type=ColumnType.UUID), ColumnSpec(name="attr")]

    def test_accepts_specs(self):
        assert normalize_columns("user", DEFAULT_COLUMNS, "data") == DEFAULT_COLUMNS

    def test_empty_rejected(self):
        with pytest.raises(InvalidColumnSpecError, match="partition column is required"):
            normalize_columns("user", [], "data")

    def test_duplicates_rejected(self):
        with pytest.raises(InvalidColumnSpecError, match="duplicate"):
            normalize_columns("user", [{"name": "pk"}, {"name": "pk"}], "data")

    def test_payload_collision_rejected(self):
        with pytest.raises(InvalidColumnSpecError, match="payload column"):
            normalize_columns("user", [{"name": "pk"}, {"name": "data"}], "data")

    def test_unsupported_type_rejected(self):
        with pytest.raises(InvalidColumnSpecError) as exc_info:
            normalize_columns("user", [{"name": "pk", "type": "map<text,text>"}], "data")
        assert exc_info.value.original_error is not None

    def test_invalid_name_rejected(self):
        with pytest.raises(InvalidColumnSpecError):
            normalize_columns("user", [{"name": "bad name"}], "data")


@pytest.mark.unit
class TestProvision:
    """Test TableProvisioner.provision."""

    @pytest.mark.asyncio
    async def test_creates_table(self, backend):
        metrics = EnhancedMetrics()
        provisioner = TableProvisioner(backend, "ks", metrics=metrics)

        schema = await provisioner.provision("user", DEFAULT_COLUMNS)

        assert schema.table == "user"
        assert schema.partition_column.name == "pk"
        assert [col.name for col in schema.cluster_columns] == ["k1", "k2", "k3"]
        assert "user" in backend.catalogs
        assert backend.calls["create_table_if_not_exists"] == 1
        assert metrics.provisioned_tables == 1

    @pytest.mark.asyncio
    async def test_invalid_spec_never_reaches_store(self, backend):
        provisioner = TableProvisioner(backend, "ks")

        with pytest.raises(InvalidColumnSpecError):
            await provisioner.provision("user", [{"name": "pk", "type": "blob"}])

        assert backend.calls["create_table_if_not_exists"] == 0

    @pytest.mark.asyncio
    async def test_existing_identical_table_is_fine(self, backend, catalog_for):
        backend.add_table("user", catalog_for(DEFAULT_COLUMNS))
        provisioner = TableProvisioner(backend, "ks")

        schema = await provisioner.provision("user", DEFAULT_COLUMNS)

        assert schema.cluster_width == 3

    @pytest.mark.asyncio
    async def test_existing_different_table_fails(self, backend, catalog_for):
        backend.add_table("user", catalog_for([ColumnSpec(name="pk"), ColumnSpec(name="k1")]))
        provisioner = TableProvisioner(backend, "ks")

        with pytest.raises(ProvisioningFailedError, match="different schema"):
            await provisioner.provision("user", DEFAULT_COLUMNS)

    @pytest.mark.asyncio
    async def test_existing_unusable_table_fails(self, backend):
        backend.add_table("user", [
            CatalogColumn("a", "partition_key", 0, "text"),
            CatalogColumn("b", "partition_key", 1, "text"),
            CatalogColumn("data", "regular", -1, "text"),
        ])
        provisioner = TableProvisioner(backend, "ks")

        with pytest.raises(ProvisioningFailedError, match="unusable schema"):
            await provisioner.provision("user", DEFAULT_COLUMNS)

    @pytest.mark.asyncio
    async def test_ddl_failure_wrapped(self, backend):
        cause = RuntimeError("unavailable")
        backend.fail("create_table_if_not_exists", cause)
        provisioner = TableProvisioner(backend, "ks")

        with pytest.raises(ProvisioningFailedError) as exc_info:
            await provisioner.provision("user", DEFAULT_COLUMNS)

        assert exc_info.value.original_error is cause
        assert exc_info.value.table == "user"

    @pytest.mark.asyncio
    async def test_catalog_read_back_failure_wrapped(self, backend):
        backend.fail("get_table_schema", RuntimeError("timeout"))
        provisioner = TableProvisioner(backend, "ks")

        with pytest.raises(ProvisioningFailedError, match="metadata could not be read"):
            await provisioner.provision("user", DEFAULT_COLUMNS)

    @pytest.mark.asyncio
    async def test_table_not_visible_yet_returns_requested(self, caplog):
        backend = AsyncMock(spec=StoreBackend)
        backend.get_table_schema.return_value = None
        provisioner = TableProvisioner(backend, "ks")

        with caplog.at_level(logging.WARNING):
            schema = await provisioner.provision("user", DEFAULT_COLUMNS)

        assert schema.cluster_width == 3
        assert "not visible in catalog yet" in caplog.text

    @pytest.mark.asyncio
    async def test_verify_disabled_skips_read_back(self, backend):
        provisioner = TableProvisioner(backend, "ks", verify=False)

        await provisioner.provision("user", DEFAULT_COLUMNS)

        assert backend.calls["get_table_schema"] == 0

    @pytest.mark.asyncio
    async def test_logs_duration(self, backend, caplog):
        provisioner = TableProvisioner(backend, "ks")

        with caplog.at_level(logging.INFO, logger="vertector_keyrouter.provisioner"):
            await provisioner.provision("user", DEFAULT_COLUMNS)

        completed = [record for record in caplog.records if getattr(record, "event", None) == "operation_completed"]
        assert len(completed) == 1
        assert completed[0].table == "user"
        assert completed[0].duration_ms >= 0
