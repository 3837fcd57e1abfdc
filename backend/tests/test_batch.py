"""Tests for the chunked, paced batch orchestrator."""

import asyncio

import pytest

from grantmatch.batch import BatchOrchestrator, ItemSkipped


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def run(orchestrator, items, handler, **kwargs):
    return asyncio.run(orchestrator.run(items, handler, **kwargs))


class TestBatchOrchestrator:
    def test_partial_failure_is_counted_not_raised(self):
        async def handler(item):
            if item in (3, 7):
                raise ValueError(f"corrupt preference for {item}")

        report = run(
            BatchOrchestrator(batch_size=5, pause_seconds=0), list(range(10)), handler
        )

        assert report.processed == 10
        assert report.success_count == 8
        assert report.error_count == 2
        assert [e.item_id for e in report.error_details] == ["3", "7"]
        assert report.error_details[0].error == "corrupt preference for 3"

    def test_skipped_items_are_not_errors(self):
        async def handler(item):
            if item == "no-members":
                raise ItemSkipped("company has no members")

        report = run(
            BatchOrchestrator(pause_seconds=0), ["a", "no-members", "b"], handler
        )

        assert report.success_count == 2
        assert report.skipped_count == 1
        assert report.error_count == 0

    def test_pauses_between_chunks_only(self):
        sleep = RecordingSleep()

        async def handler(item):
            return None

        run(BatchOrchestrator(batch_size=4, pause_seconds=1.0, sleep=sleep), list(range(10)), handler)

        assert sleep.calls == [1.0, 1.0]

    def test_items_run_one_at_a_time(self):
        active = []
        peak = []

        async def handler(item):
            active.append(item)
            peak.append(len(active))
            await asyncio.sleep(0)
            active.remove(item)

        run(BatchOrchestrator(batch_size=5, pause_seconds=0), list(range(5)), handler)

        assert max(peak) == 1

    def test_batch_size_override(self):
        sleep = RecordingSleep()

        async def handler(item):
            return None

        run(
            BatchOrchestrator(batch_size=10, pause_seconds=0.5, sleep=sleep),
            list(range(6)),
            handler,
            batch_size=2,
        )

        assert sleep.calls == [0.5, 0.5]

    def test_empty_input(self):
        async def handler(item):
            raise AssertionError("not called")

        report = run(BatchOrchestrator(), [], handler)

        assert report.processed == 0
        assert report.to_summary()["error_details"] == []

    def test_item_id_callable_used_in_error_details(self):
        async def handler(item):
            raise RuntimeError()

        report = run(
            BatchOrchestrator(pause_seconds=0),
            [{"id": "c-1"}],
            handler,
            item_id=lambda item: item["id"],
        )

        assert report.to_summary()["error_details"] == [
            {"itemId": "c-1", "error": "RuntimeError"}
        ]

    def test_item_id_failure_counts_as_item_error(self):
        handled = []

        async def handler(item):
            handled.append(item["id"])

        report = run(
            BatchOrchestrator(pause_seconds=0),
            [{"id": "c-1"}, {"name": "no id"}, {"id": "c-3"}],
            handler,
            item_id=lambda item: item["id"],
        )

        assert handled == ["c-1", "c-3"]
        assert report.success_count == 2
        assert report.error_count == 1
        assert report.to_summary()["error_details"] == [
            {"itemId": "{'name': 'no id'}", "error": "'id'"}
        ]

    @pytest.mark.parametrize("size", [0, -1])
    def test_invalid_batch_size(self, size):
        with pytest.raises(ValueError):
            BatchOrchestrator(batch_size=size)
