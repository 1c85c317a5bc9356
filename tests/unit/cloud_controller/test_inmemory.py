"""Tests for the in-memory repositories."""

from __future__ import annotations

import asyncio

import pytest

from cloud_controller.app.last_operation import LastOperation
from cloud_controller.app.models import BindingKind


@pytest.mark.asyncio
async def test_find_returns_a_copy(make_instance, instances):
    await make_instance('m1')

    found = await instances.find('m1')
    found.name = 'renamed'

    assert (await instances.find('m1')).name == 'name-m1'


@pytest.mark.asyncio
async def test_lock_and_reload_rolls_back_on_error(make_instance, instances):
    await make_instance('m1')

    with pytest.raises(RuntimeError):
        async with instances.lock_and_reload('m1') as locked:
            locked.last_operation = LastOperation(type='delete')
            await instances.save(locked)
            raise RuntimeError('fail mid-transaction')

    assert (await instances.find('m1')).last_operation is None


@pytest.mark.asyncio
async def test_lock_and_reload_yields_none_for_missing_row(instances):
    async with instances.lock_and_reload('missing') as locked:
        assert locked is None


@pytest.mark.asyncio
async def test_lock_serializes_writers(make_instance, instances):
    await make_instance('m1')
    order = []

    async def writer(tag: str) -> None:
        async with instances.lock_and_reload('m1'):
            order.append(f'{tag}-start')
            await asyncio.sleep(0)
            order.append(f'{tag}-end')

    await asyncio.gather(writer('a'), writer('b'))

    assert order == ['a-start', 'a-end', 'b-start', 'b-end']


@pytest.mark.asyncio
async def test_list_for_instance_filters_by_kind(make_instance, make_binding, bindings):
    m1 = await make_instance('m1')
    m2 = await make_instance('m2')
    await make_binding('b1', m1)
    await make_binding('r1', m1, kind=BindingKind.ROUTE)
    await make_binding('b2', m2)

    assert {b.guid for b in await bindings.list_for_instance('m1')} == {'b1', 'r1'}
    assert [b.guid for b in await bindings.list_for_instance('m1', kind=BindingKind.ROUTE)] == ['r1']
    assert bindings.count(BindingKind.APP) == 2


@pytest.mark.asyncio
async def test_deleted_row_releases_its_lock(make_instance, instances):
    await make_instance('m1')

    async with instances.lock_and_reload('m1') as locked:
        await instances.delete(locked)
    async with instances.lock_and_reload('missing'):
        pass

    assert instances._locks == {}


@pytest.mark.asyncio
async def test_lock_survives_delete_while_others_wait(make_instance, instances):
    await make_instance('m1')
    seen = []

    async def deleter() -> None:
        async with instances.lock_and_reload('m1') as locked:
            await asyncio.sleep(0)
            await instances.delete(locked)

    async def waiter() -> None:
        async with instances.lock_and_reload('m1') as locked:
            seen.append(locked)
            assert 'm1' in instances._locks

    await asyncio.gather(deleter(), waiter())

    assert seen == [None]
    assert instances._locks == {}


@pytest.mark.asyncio
async def test_live_row_keeps_its_lock(make_instance, instances):
    await make_instance('m1')

    async with instances.lock_and_reload('m1'):
        pass

    assert 'm1' in instances._locks
