"""
Timeline store tests

Sorted-set semantics the feed relies on: newest-first reads bounded by a
cursor, score updates without duplicates, and trimming that always drops the
oldest members first.
"""
import random

import pytest

from timeline_feed.timeline_store import (
    FOR_YOU_KEY,
    TimelineEntry,
    TimelineStore,
    following_timeline_key,
    tombstone_key,
    user_timeline_key,
)

from helpers import BrokenRedis, make_redis, run


def test_key_layout():
    assert FOR_YOU_KEY == "timeline:forYou"
    assert user_timeline_key(7) == "timeline:user:7"
    assert following_timeline_key(7) == "timeline:following:7"
    assert tombstone_key(7) == "timeline:tombstone:7"


class TestReads:

    def test_range_is_newest_first_and_bounded_by_cursor(self):
        async def scenario():
            store = TimelineStore(make_redis())
            for content_id, score in [(1, 100), (2, 300), (3, 200), (4, 400)]:
                await store.upsert("t", content_id, score)
            everything = await store.range_desc_at_most("t", 10_000, 10)
            bounded = await store.range_desc_at_most("t", 300, 10)
            limited = await store.range_desc_at_most("t", 10_000, 2)
            return everything, bounded, limited

        everything, bounded, limited = run(scenario())
        assert [e.content_id for e in everything] == [4, 2, 3, 1]
        assert [e.content_id for e in bounded] == [2, 3, 1]
        assert bounded[0] == TimelineEntry(2, 300.0)
        assert [e.content_id for e in limited] == [4, 2]

    def test_range_scores_never_increase(self):
        async def scenario():
            store = TimelineStore(make_redis())
            rng = random.Random(7)
            for content_id in range(1, 200):
                await store.upsert("t", content_id, rng.randint(0, 50))
            return await store.range_desc_at_most("t", 40, 150)

        entries = run(scenario())
        scores = [e.score for e in entries]
        assert scores == sorted(scores, reverse=True)
        assert all(s <= 40 for s in scores)

    def test_equal_scores_come_back_in_a_stable_order(self):
        async def scenario():
            store = TimelineStore(make_redis())
            for content_id in (5, 3, 9):
                await store.upsert("t", content_id, 100)
            first = await store.range_desc_at_most("t", 100, 10)
            second = await store.range_desc_at_most("t", 100, 10)
            return first, second

        first, second = run(scenario())
        assert first == second
        assert len(first) == 3

    def test_zero_limit_reads_nothing(self):
        async def scenario():
            store = TimelineStore(make_redis())
            await store.upsert("t", 1, 1)
            return await store.range_desc_at_most("t", 10, 0)

        assert run(scenario()) == []

    def test_non_numeric_members_are_skipped(self):
        async def scenario():
            redis = make_redis()
            store = TimelineStore(redis)
            await redis.zadd("t", {"oops": 50, "12": 40})
            return await store.range_desc_at_most("t", 100, 10)

        assert run(scenario()) == [TimelineEntry(12, 40.0)]


class TestWrites:

    def test_reinsert_updates_score_instead_of_duplicating(self):
        async def scenario():
            store = TimelineStore(make_redis())
            await store.upsert("t", 1, 100)
            await store.upsert("t", 1, 500)
            return await store.cardinality("t"), await store.range_desc_at_most("t", 1000, 10)

        count, entries = run(scenario())
        assert count == 1
        assert entries == [TimelineEntry(1, 500.0)]

    def test_remove_missing_member_is_a_noop(self):
        async def scenario():
            store = TimelineStore(make_redis())
            await store.upsert("t", 1, 100)
            await store.remove("t", 2)
            await store.remove("empty", 1)
            return await store.cardinality("t")

        assert run(scenario()) == 1

    def test_upsert_many_and_remove_many_touch_every_key(self):
        async def scenario():
            store = TimelineStore(make_redis())
            await store.upsert_many(["a", "b"], 9, 10)
            after_add = [await store.cardinality(k) for k in ("a", "b")]
            await store.remove_many(["a", "b"], 9)
            after_remove = [await store.cardinality(k) for k in ("a", "b")]
            return after_add, after_remove

        assert run(scenario()) == ([1, 1], [0, 0])

    @pytest.mark.parametrize("batch_size,concurrency", [(1, 1), (2, 2), (500, 4)])
    def test_chunked_fanout_reaches_every_key(self, batch_size, concurrency):
        keys = [following_timeline_key(i) for i in range(7)]

        async def scenario():
            store = TimelineStore(
                make_redis(), batch_size=batch_size, max_concurrency=concurrency
            )
            await store.upsert_for_keys(keys, 42, 1000)
            added = [await store.cardinality(k) for k in keys]
            await store.remove_for_keys(keys, 42)
            removed = [await store.cardinality(k) for k in keys]
            return added, removed

        added, removed = run(scenario())
        assert added == [1] * 7
        assert removed == [0] * 7


class TestTrim:

    def test_trim_drops_the_oldest_entries(self):
        async def scenario():
            store = TimelineStore(make_redis(), max_entries=3)
            for content_id in range(1, 6):
                await store.upsert("t", content_id, content_id * 10)
            removed = await store.trim_to_capacity("t")
            return removed, await store.range_desc_at_most("t", 1000, 10)

        removed, entries = run(scenario())
        assert removed == 2
        assert [e.content_id for e in entries] == [5, 4, 3]

    def test_trim_under_capacity_removes_nothing(self):
        async def scenario():
            store = TimelineStore(make_redis())
            await store.upsert("t", 1, 1)
            return await store.trim_to_capacity("t", cap=5)

        assert run(scenario()) == 0

    def test_default_capacity_is_two_thousand(self):
        assert TimelineStore(make_redis()).max_entries == 2000

    def test_random_upserts_and_removes_stay_bounded(self):
        cap = 20
        rng = random.Random(1234)
        scores = rng.sample(range(100_000), 400)

        async def scenario():
            store = TimelineStore(make_redis(), max_entries=cap)
            model: dict[int, int] = {}
            for step, score in enumerate(scores):
                content_id = rng.randint(1, 150)
                if step % 5 == 4 and model:
                    victim = rng.choice(sorted(model))
                    await store.remove("t", victim)
                    model.pop(victim)
                    continue
                await store.upsert("t", content_id, score)
                model[content_id] = score
                await store.trim_to_capacity("t")

                newest = sorted(model.items(), key=lambda kv: kv[1], reverse=True)[:cap]
                model = dict(newest)
                entries = await store.range_desc_at_most("t", 10**9, cap + 5)
                assert len(entries) <= cap
                assert [e.content_id for e in entries] == [cid for cid, _ in newest]

        run(scenario())

    def test_trim_quietly_swallows_store_errors(self):
        async def scenario():
            store = TimelineStore(BrokenRedis(), max_entries=1)
            await store.trim_quietly(["a", "b"])

        run(scenario())


class TestTombstones:

    def test_mark_and_check(self):
        async def scenario():
            redis = make_redis()
            store = TimelineStore(redis, tombstone_ttl_seconds=60)
            before = await store.is_deleted(5)
            await store.mark_deleted(5)
            return before, await store.is_deleted(5), await redis.ttl(tombstone_key(5))

        before, after, ttl = run(scenario())
        assert before is False
        assert after is True
        assert 0 < ttl <= 60
