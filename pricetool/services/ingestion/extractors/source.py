"""Extractor selection and bounded read-ahead."""
import queue
import threading
from typing import Any, Iterable, Iterator, Optional, Union

from pricetool.models.enums import SourceFormat
from pricetool.services.ingestion.extractors.csv_extractor import CsvExtractor
from pricetool.services.ingestion.extractors.format_detector import detect_source_format
from pricetool.services.ingestion.extractors.json_extractor import JsonExtractor
from pricetool.utils.logger import get_logger

logger = get_logger(__name__)

Extractor = Union[CsvExtractor, JsonExtractor]

_END = object()


def open_extractor(file_path: str, csv_chunk_size: int = 5000) -> Extractor:
    """
    Return the extractor matching a source file.

    Raises:
        DecodeError: If the file is missing or empty
    """
    source_format = detect_source_format(file_path)
    if source_format == SourceFormat.JSON:
        return JsonExtractor(file_path)
    return CsvExtractor(file_path, chunk_size=csv_chunk_size)


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class BoundedPrefetch:
    """
    Read ahead from an iterable on a producer thread.

    At most ``maxsize`` items are buffered; the producer blocks when the
    consumer falls behind. Producer exceptions are re-raised in the consumer.
    ``close()`` stops the producer, for example when a load is cancelled.
    """

    def __init__(self, source: Iterable[Any], maxsize: int, name: str = "extract-prefetch"):
        self._source = source
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, maxsize))
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._produce, name=name, daemon=True)
        self._started = False

    def _put(self, item: Any) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _produce(self) -> None:
        iterator = iter(self._source)
        try:
            for item in iterator:
                if not self._put(item):
                    return
        except Exception as e:  # handed to the consumer thread
            self._put(_Failure(e))
            return
        finally:
            # Release the source's file handles on the thread that opened them
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
        self._put(_END)

    def __iter__(self) -> Iterator[Any]:
        if not self._started:
            self._started = True
            self._thread.start()
        while True:
            item = self._queue.get()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.error
            yield item

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        # Unblock a producer waiting on a full queue
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        if self._started:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Prefetch thread did not stop in time", thread=self._thread.name)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
