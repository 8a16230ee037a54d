from __future__ import annotations

import logging
import math

import numpy as np

from .config import AnalogModelConfig

logger = logging.getLogger(__name__)


def _divider_ratio(cfg: AnalogModelConfig) -> np.float64:
    lower = np.float64(cfg.lower_resistance)
    return (lower + np.float64(cfg.upper_resistance)) / lower


def convert(adc_code: float, cfg: AnalogModelConfig) -> float:
    """
    Convert one raw ADC code to the current through the shunt.

    The chain is ADC code -> ADC input voltage -> amplifier output (undoing the
    divider) -> amplifier input (undoing offset and gain) -> shunt current.
    Zero denominators yield inf/nan instead of raising.
    """
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        bit_scale = np.float64(2.0) ** (np.float64(cfg.adc_bits) - 1.0) - 1.0
        v_adc = np.float64(cfg.adc_full_scale_voltage) * np.float64(adc_code) / bit_scale
        v_amp_out = v_adc * _divider_ratio(cfg)
        v_amp_in = (v_amp_out - np.float64(cfg.reference_voltage)) / np.float64(cfg.gain)
        shunt_current = v_amp_in / (np.float64(cfg.shunt_resistance_milliohms) * 1000.0)
    logger.debug("adc => %s, current => %s", adc_code, shunt_current)
    return float(shunt_current)


def format_value(value: float) -> str:
    """Shortest round-trip decimal without exponent (``1000``, ``-0.000001``)."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return np.format_float_positional(value, unique=True, trim="-")
