"""Tests for extractor selection and bounded read-ahead."""
import threading
import time

import pytest

from pricetool.services.ingestion.extractors.csv_extractor import CsvExtractor
from pricetool.services.ingestion.extractors.json_extractor import JsonExtractor
from pricetool.services.ingestion.extractors.source import BoundedPrefetch, open_extractor
from tests.utils.sample_files import json_item, wide_row, write_json, write_wide_csv


@pytest.mark.unit
class TestOpenExtractor:
    """Test open_extractor."""

    def test_open_json(self, tmp_path):
        """Test JSON files get the JSON extractor."""
        path = write_json(tmp_path / "h.json", [json_item("A")])
        assert isinstance(open_extractor(str(path)), JsonExtractor)

    def test_open_csv(self, tmp_path):
        """Test CSV files get the CSV extractor with the configured chunk size."""
        path = write_wide_csv(tmp_path / "h.csv", [wide_row(1)])
        extractor = open_extractor(str(path), csv_chunk_size=7)
        assert isinstance(extractor, CsvExtractor)
        assert extractor.chunk_size == 7


@pytest.mark.unit
class TestBoundedPrefetch:
    """Test BoundedPrefetch."""

    def test_yields_all_items_in_order(self):
        """Test items pass through unchanged."""
        with BoundedPrefetch(range(50), maxsize=4) as prefetch:
            assert list(prefetch) == list(range(50))

    def test_producer_is_bounded(self):
        """Test the producer stops reading when the buffer is full."""
        produced = []

        def source():
            for i in range(100):
                produced.append(i)
                yield i

        prefetch = BoundedPrefetch(source(), maxsize=3)
        iterator = iter(prefetch)
        assert next(iterator) == 0
        time.sleep(0.3)
        # One taken, three buffered, at most one held by a blocked put
        assert len(produced) <= 5
        prefetch.close()

    def test_producer_error_reaches_consumer(self):
        """Test an exception in the source is re-raised on the consumer side."""

        def source():
            yield 1
            raise ValueError("bad line")

        prefetch = BoundedPrefetch(source(), maxsize=2)
        items = []
        with pytest.raises(ValueError, match="bad line"):
            for item in prefetch:
                items.append(item)
        assert items == [1]
        prefetch.close()

    def test_close_stops_producer(self):
        """Test close() ends a producer blocked on a full buffer."""
        closed = threading.Event()

        def source():
            try:
                i = 0
                while True:
                    yield i
                    i += 1
            finally:
                closed.set()

        prefetch = BoundedPrefetch(source(), maxsize=2)
        iterator = iter(prefetch)
        next(iterator)
        prefetch.close(timeout=2.0)
        assert closed.wait(2.0)
        assert not prefetch._thread.is_alive()

    def test_close_before_start(self):
        """Test closing an unused prefetch does nothing."""
        BoundedPrefetch(iter([1, 2]), maxsize=1).close()
