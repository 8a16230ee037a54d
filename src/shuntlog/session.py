from __future__ import annotations

import logging
from typing import AsyncIterable, Callable, Dict, Iterable, List, Optional

from .records import ConvertedSample, InvalidAdcCodeError, RecordParser, TooFewFieldsError
from .sink import OutputSink

logger = logging.getLogger(__name__)


class AcquisitionSession:
    """
    Glue shared by both transports: every raw record is parsed, converted and
    emitted before the next one is pulled from the source.
    """

    def __init__(self, parser: RecordParser, sink: OutputSink, skip_malformed: bool = False):
        self.parser = parser
        self.sink = sink
        self.skip_malformed = skip_malformed
        self._callbacks: List[Callable[[ConvertedSample], None]] = []
        self._emitted = 0
        self._skipped = 0

    def process(self, raw: str) -> Optional[ConvertedSample]:
        try:
            sample = self.parser.parse(raw)
        except TooFewFieldsError as exc:
            self._skipped += 1
            logger.error("index error: %s", exc)
            return None
        except InvalidAdcCodeError as exc:
            if not self.skip_malformed:
                raise
            self._skipped += 1
            logger.warning("Skipping malformed record: %s", exc)
            return None
        self.sink.emit(sample.format())
        self._emitted += 1
        for callback in self._callbacks:
            callback(sample)
        return sample

    def run(self, records: Iterable[str]) -> int:
        for raw in records:
            self.process(raw)
        return self._emitted

    async def run_async(self, records: AsyncIterable[str]) -> int:
        async for raw in records:
            self.process(raw)
        return self._emitted

    def register_callback(self, callback: Callable[[ConvertedSample], None]) -> None:
        self._callbacks.append(callback)

    def stats(self) -> Dict[str, int]:
        stats = self.parser.stats()
        stats["emitted"] = self._emitted
        stats["skipped"] = self._skipped
        return stats

    def close(self) -> None:
        self.sink.close()
