import asyncio
import json
import os
import sys
import time

sys.path.insert(0, '.')

import pytest

from monitoring.async_utils import RetryPolicy
from orchestration.overrides import OverrideRecord, OverrideStore
from orchestration.persistence import JsonDocument
from strategy.errors import OverridesLocked


def test_missing_document_yields_empty_record(tmp_path):
    store = OverrideStore(str(tmp_path / 'overrides.json'))
    record = asyncio.run(store.get('AAPL'))
    assert record.is_empty


def test_write_then_read_returns_identical_record(tmp_path):
    async def _run():
        store = OverrideStore(str(tmp_path / 'overrides.json'))
        written = await store.set_percent('btc-usd', 2.0, 1.0, 0.5)
        read_back = await store.get('BTC-USD')
        assert read_back == written
        assert read_back == OverrideRecord(mode='percent', target_pct=2.0, stop_pct=1.0, trail_pct=0.5)

    asyncio.run(_run())


def test_upsert_merges_fields_of_one_instrument(tmp_path):
    async def _run():
        store = OverrideStore(str(tmp_path / 'overrides.json'))
        await store.upsert('BTC-USD', {'avg_cost': 50000.0})
        await store.set_percent('BTC-USD', 2.0, 1.0)
        await store.set_absolute('AAPL', 250.0, 220.0)
        record = await store.get('BTC-USD')
        assert record.avg_cost == 50000.0
        assert record.mode == 'percent'
        doc = json.loads((tmp_path / 'overrides.json').read_text())
        assert doc['BTC-USD']['avgCost'] == 50000.0
        assert doc['AAPL'] == {'mode': 'absolute', 'target': 250.0, 'stop': 220.0}

    asyncio.run(_run())


def test_external_edit_is_picked_up_after_watermark_changes(tmp_path):
    async def _run():
        path = tmp_path / 'overrides.json'
        store = OverrideStore(str(path))
        await store.set_percent('AAPL', 2.0, 1.0)
        path.write_text(json.dumps({'AAPL': {'mode': 'absolute', 'target': 300, 'stop': 200}, 'MSFT': {}}))
        # Guarantee a distinct mtime even on coarse filesystems
        future = time.time() + 5
        os.utime(path, (future, future))
        record = await store.get('AAPL')
        assert record.mode == 'absolute'
        assert record.target == 300.0

    asyncio.run(_run())


def test_torn_document_keeps_cached_copy(tmp_path):
    async def _run():
        path = tmp_path / 'overrides.json'
        store = OverrideStore(str(path))
        await store.set_absolute('AAPL', 250.0, 220.0)
        path.write_text('{"AAPL": {"mode": "abs')
        future = time.time() + 5
        os.utime(path, (future, future))
        record = await store.get('AAPL')
        assert record.target == 250.0

    asyncio.run(_run())


def test_remove_deletes_instrument(tmp_path):
    async def _run():
        store = OverrideStore(str(tmp_path / 'overrides.json'))
        await store.set_absolute('AAPL', 250.0, 220.0)
        assert await store.remove('aapl') is True
        assert await store.remove('AAPL') is False
        assert (await store.get('AAPL')).is_empty

    asyncio.run(_run())


def test_concurrent_writers_keep_every_instrument(tmp_path):
    async def _run():
        path = str(tmp_path / 'overrides.json')
        first = OverrideStore(path)
        second = OverrideStore(path)
        await asyncio.gather(*(
            (first if i % 2 else second).set_percent(f"SYM{i}", float(i), 1.0)
            for i in range(8)
        ))
        records = await OverrideStore(path).all()
        assert sorted(records) == sorted(f"SYM{i}" for i in range(8))

    asyncio.run(_run())


def test_held_lock_surfaces_as_overrides_locked(tmp_path):
    path = tmp_path / 'overrides.json'
    doc = JsonDocument(str(path), lock_retry=RetryPolicy(attempts=2, base_delay_s=0.0, max_delay_s=0.0))
    doc.lock_path.write_text('other-writer')
    with pytest.raises(OverridesLocked):
        asyncio.run(doc.update(lambda data: data.update({'AAPL': {}})))
    assert not path.exists()


def test_stale_lock_is_broken(tmp_path):
    path = tmp_path / 'overrides.json'
    doc = JsonDocument(str(path), stale_lock_s=1.0)
    doc.lock_path.write_text('crashed-writer')
    old = time.time() - 60
    os.utime(doc.lock_path, (old, old))
    data, _ = asyncio.run(doc.update(lambda d: d.update({'AAPL': {'mode': 'percent'}})))
    assert data == {'AAPL': {'mode': 'percent'}}
    assert not doc.lock_path.exists()


def test_watch_reloads_in_background(tmp_path):
    async def _run():
        path = tmp_path / 'overrides.json'
        store = OverrideStore(str(path), watch_interval_s=0.01)
        store.watch()
        path.write_text(json.dumps({'ETH-USD': {'mode': 'percent', 'targetPct': 3, 'stopPct': 1}}))
        for _ in range(100):
            await asyncio.sleep(0.01)
            if not store.get_cached('ETH-USD').is_empty:
                break
        await store.stop()
        assert store.get_cached('ETH-USD').target_pct == 3.0

    asyncio.run(_run())
