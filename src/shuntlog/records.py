from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .config import AnalogModelConfig
from .conversion import convert, format_value

CHANNELS_4CH = 4
MIN_FIELDS = 2
MIN_FIELDS_4CH = 1 + CHANNELS_4CH


class RecordError(ValueError):
    """Base class for records that cannot be converted."""


class TooFewFieldsError(RecordError):
    def __init__(self, raw: str, count: int):
        super().__init__(f"record has {count} field(s), need at least {MIN_FIELDS}: {raw.strip()!r}")
        self.raw = raw
        self.count = count


class InvalidAdcCodeError(RecordError):
    def __init__(self, raw: str, index: int, text: str):
        super().__init__(f"field {index} is not a number ({text!r}) in {raw.strip()!r}")
        self.raw = raw
        self.index = index
        self.text = text


@dataclass(frozen=True)
class ConvertedSample:
    """Shunt currents computed from one raw record, in channel order."""

    tag: str
    adc_code: float
    currents: Tuple[float, ...]

    def format(self) -> str:
        parts = [format_value(self.adc_code)]
        parts.extend(format_value(current) for current in self.currents)
        return ", ".join(parts)


def _parse_code(raw: str, fields: List[str], index: int) -> float:
    text = fields[index].strip()
    # float() also takes digit separators, the device never sends them
    if "_" in text:
        raise InvalidAdcCodeError(raw, index, text)
    try:
        return float(text)
    except ValueError as exc:
        raise InvalidAdcCodeError(raw, index, text) from exc


class RecordParser:
    """
    Turns `<tag>, <ch1>[, <ch2>, <ch3>, <ch4>]` records into converted samples.
    Channels 2-4 are only read when the analog model enables them.
    """

    def __init__(self, cfg: AnalogModelConfig):
        self.cfg = cfg
        self._stats: Dict[str, int] = {"records": 0, "too_few_fields": 0, "partial": 0, "invalid": 0}
        self._log = logging.getLogger(__name__)

    def parse(self, raw: str) -> ConvertedSample:
        fields = raw.split(",")
        if len(fields) < MIN_FIELDS:
            self._stats["too_few_fields"] += 1
            raise TooFewFieldsError(raw, len(fields))
        try:
            codes = [_parse_code(raw, fields, 1)]
            if self.cfg.enable_4ch:
                if len(fields) >= MIN_FIELDS_4CH:
                    codes.extend(_parse_code(raw, fields, index) for index in range(2, MIN_FIELDS_4CH))
                else:
                    self._stats["partial"] += 1
                    self._log.warning(
                        "ch2~4 values missing (%d field(s)), emitting ch1 only", len(fields)
                    )
        except InvalidAdcCodeError:
            self._stats["invalid"] += 1
            raise
        self._stats["records"] += 1
        return ConvertedSample(
            tag=fields[0].strip(),
            adc_code=codes[0],
            currents=tuple(convert(code, self.cfg) for code in codes),
        )

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)


def parse_line(raw: str, cfg: AnalogModelConfig) -> str:
    """Parse and convert one record, returning the formatted result string."""
    return RecordParser(cfg).parse(raw).format()
