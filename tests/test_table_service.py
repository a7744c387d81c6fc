# tests/test_table_service.py
# 表生命周期服务测试

import pytest

from admdiv.core.exceptions import InvalidStateError, PartitionIOError
from admdiv.services.partitioner import Partitioner
from admdiv.services.table_service import DatasetState, TableService
from admdiv.storage.base import TableStatus

from conftest import SAMPLE_KEYS, MemoryStore


@pytest.fixture
async def exported(loaded_store, config):
    """导出目录中已有全部分区文件"""
    await Partitioner(loaded_store, config).export_all()
    return config.export_dir


class TestDatasetState:
    """状态推导"""

    @pytest.mark.parametrize(
        "status, expected",
        [
            (TableStatus(exists=False), DatasetState.EMPTY),
            (TableStatus(exists=True, rows=0), DatasetState.SCHEMA_ONLY),
            (TableStatus(exists=True, rows=0, indexed=True), DatasetState.SCHEMA_ONLY),
            (TableStatus(exists=True, rows=10), DatasetState.LOADED),
            (TableStatus(exists=True, rows=10, indexed=True), DatasetState.INDEXED),
        ],
    )
    def test_from_status(self, status, expected):
        assert DatasetState.from_status(status) == expected


class TestLifecycle:
    """状态机"""

    @pytest.mark.asyncio
    async def test_full_cycle(self, empty_store, config, exported):
        service = TableService(empty_store, config)
        assert await service.state() == DatasetState.EMPTY

        await service.create()
        assert await service.state() == DatasetState.SCHEMA_ONLY

        result = await service.load()
        assert result.keys == SAMPLE_KEYS
        assert await service.state() == DatasetState.LOADED

        await service.index()
        assert await service.state() == DatasetState.INDEXED

        await service.truncate()
        assert await service.state() == DatasetState.SCHEMA_ONLY

        await service.drop()
        assert await service.state() == DatasetState.EMPTY

    @pytest.mark.asyncio
    async def test_create_and_drop_are_idempotent(self, empty_store, config):
        service = TableService(empty_store, config)

        await service.create()
        await service.create()
        assert await service.state() == DatasetState.SCHEMA_ONLY

        await service.drop()
        await service.drop()
        assert await service.state() == DatasetState.EMPTY

    @pytest.mark.asyncio
    async def test_create_keeps_existing_data(self, loaded_store, config):
        service = TableService(loaded_store, config)

        await service.create()

        assert await service.state() == DatasetState.LOADED

    @pytest.mark.asyncio
    async def test_index_requires_data(self, empty_store, config):
        service = TableService(empty_store, config)
        await service.create()

        with pytest.raises(InvalidStateError):
            await service.index()

    @pytest.mark.asyncio
    async def test_dump_requires_data(self, empty_store, config):
        service = TableService(empty_store, config)

        with pytest.raises(InvalidStateError):
            await service.dump()

    @pytest.mark.asyncio
    async def test_order_requires_data(self, empty_store, config):
        service = TableService(empty_store, config)
        await service.create()

        with pytest.raises(InvalidStateError):
            await service.order()

    @pytest.mark.asyncio
    async def test_load_requires_table(self, empty_store, config, exported):
        service = TableService(empty_store, config)

        with pytest.raises(InvalidStateError):
            await service.load()

    @pytest.mark.asyncio
    async def test_load_onto_indexed_does_not_reindex(self, empty_store, config, exported):
        service = TableService(empty_store, config)
        await service.create()
        await service.load([100000, 110000])
        await service.index()

        await service.load([110100])

        assert await service.state() == DatasetState.INDEXED
        assert empty_store.statements == []


class TestComposite:
    """组合操作"""

    @pytest.mark.asyncio
    async def test_setup(self, empty_store, config, exported, records):
        service = TableService(empty_store, config)

        result = await service.setup()

        assert result.rows == len(records)
        assert await service.state() == DatasetState.INDEXED
        codes = [int(row[0]) for row in empty_store.tables["adcode"]]
        assert codes == [r.code for r in sorted(records, key=lambda r: (r.rank, r.code))]

    @pytest.mark.asyncio
    async def test_reload_subset(self, loaded_store, config, exported):
        service = TableService(loaded_store, config)

        result = await service.reload([100000, 110000, 310000])

        assert result.rows == 3
        assert sorted(int(row[0]) for row in loaded_store.tables["adcode"]) == [
            100000000000, 110000000000, 310000000000,
        ]

    @pytest.mark.asyncio
    async def test_reset(self, loaded_store, config):
        service = TableService(loaded_store, config)

        await service.reset()

        assert await service.state() == DatasetState.SCHEMA_ONLY


class TestFiles:
    """导出目录与备份"""

    @pytest.mark.asyncio
    async def test_dump_subset(self, loaded_store, config):
        service = TableService(loaded_store, config)

        summary = await service.dump([310000, 110000], parallelism=1)

        assert sorted(summary.succeeded) == [110000, 310000]

    @pytest.mark.asyncio
    async def test_clean(self, loaded_store, config, exported):
        (config.export_dir / "110000.csv.part").write_text("", encoding="utf-8")
        (config.export_dir / "notes.txt").write_text("keep", encoding="utf-8")
        service = TableService(loaded_store, config)

        removed = await service.clean()

        assert removed == len(SAMPLE_KEYS) + 1
        assert [path.name for path in config.export_dir.iterdir()] == ["notes.txt"]

    @pytest.mark.asyncio
    async def test_clean_without_directory(self, empty_store, config):
        assert await TableService(empty_store, config).clean() == 0

    @pytest.mark.asyncio
    async def test_backup_and_restore(self, loaded_store, config):
        service = TableService(loaded_store, config)
        original = [list(row) for row in loaded_store.tables["adcode"]]

        path = await service.backup()
        await service.truncate()
        await service.restore()

        assert path == config.backup_dir / "adcode.dump"
        assert loaded_store.tables["adcode"] == original

    @pytest.mark.asyncio
    async def test_restore_without_backup(self, loaded_store, config):
        with pytest.raises(PartitionIOError):
            await TableService(loaded_store, config).restore()

    @pytest.mark.asyncio
    async def test_check(self, loaded_store, config, records):
        report = await TableService(loaded_store, config).check()

        assert report.ok
        assert report.total == len(records)
        assert list(config.staging_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_check_reports_orphans(self, config, records):
        store = MemoryStore()
        # 缺少 110100 市辖区
        store.tables["adcode"] = [r.to_row() for r in records if r.code != 110100000000]

        report = await TableService(store, config).check()

        assert not report.ok
        assert report.dangling_parents == [110101000000, 110102000000]
