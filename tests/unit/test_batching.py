"""Unit tests for batched writes with row-level fallback."""

import pytest

from rollup.utils.batching import chunked, upsert_in_batches


class RecordingWriter:
    """Write callable that rejects any batch containing a poisoned row."""

    def __init__(self, poisoned=()):
        self.poisoned = set(poisoned)
        self.batches = []
        self.stored = []

    def __call__(self, rows):
        self.batches.append(list(rows))
        if self.poisoned.intersection(rows):
            raise RuntimeError("constraint violation")
        self.stored.extend(rows)
        return len(rows)


class TestChunked:
    def test_even_split(self):
        assert list(chunked([1, 2, 3, 4], 2)) == [[1, 2], [3, 4]]

    def test_remainder(self):
        assert list(chunked([1, 2, 3], 2)) == [[1, 2], [3]]

    def test_empty(self):
        assert list(chunked([], 5)) == []

    def test_zero_size_rejected(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))


class TestUpsertInBatches:
    def test_all_rows_written(self):
        writer = RecordingWriter()

        written, errored = upsert_in_batches(list(range(5)), writer, 2, label="test")

        assert (written, errored) == (5, 0)
        assert len(writer.batches) == 3

    def test_bad_row_only_costs_itself(self):
        writer = RecordingWriter(poisoned={3})

        written, errored = upsert_in_batches(list(range(5)), writer, 2, label="test")

        assert (written, errored) == (4, 1)
        assert sorted(writer.stored) == [0, 1, 2, 4]

    def test_nothing_to_write(self):
        writer = RecordingWriter()
        assert upsert_in_batches([], writer, 10, label="test") == (0, 0)
        assert writer.batches == []
