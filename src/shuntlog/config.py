from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

PERIPHERAL_NAME_MATCH_FILTER = "M5Atom-MCP3424 BLE Sender"
NOTIFY_CHARACTERISTIC_UUID = "ae84d642-7f4b-11ec-a8a3-0242ac120002"

MODES = {"serial", "ble"}


@dataclass(frozen=True)
class AnalogModelConfig:
    """Analog front-end between the shunt and the ADC."""

    adc_bits: float = 12.0
    shunt_resistance_milliohms: float = 2.0
    reference_voltage: float = 0.2
    gain: float = 100.0
    upper_resistance: float = 3300.0
    lower_resistance: float = 5600.0
    adc_full_scale_voltage: float = 2.048
    enable_4ch: bool = False

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "AnalogModelConfig":
        defaults = AnalogModelConfig()
        return AnalogModelConfig(
            adc_bits=float(data.get("adc_bits", defaults.adc_bits)),
            shunt_resistance_milliohms=float(
                data.get("shunt_resistance_milliohms", defaults.shunt_resistance_milliohms)
            ),
            reference_voltage=float(data.get("reference_voltage", defaults.reference_voltage)),
            gain=float(data.get("gain", defaults.gain)),
            upper_resistance=float(data.get("upper_resistance", defaults.upper_resistance)),
            lower_resistance=float(data.get("lower_resistance", defaults.lower_resistance)),
            adc_full_scale_voltage=float(
                data.get("adc_full_scale_voltage", defaults.adc_full_scale_voltage)
            ),
            enable_4ch=bool(data.get("enable_4ch", defaults.enable_4ch)),
        )


@dataclass
class SerialSettings:
    port: Optional[str] = None
    baudrate: int = 115200
    timeout: float = 0.03


@dataclass
class BleSettings:
    name_filter: str = PERIPHERAL_NAME_MATCH_FILTER
    notify_uuid: str = NOTIFY_CHARACTERISTIC_UUID
    scan_seconds: float = 2.0
    # None selects the platform default adapter
    adapters: List[Optional[str]] = field(default_factory=lambda: [None])


@dataclass
class OutputSettings:
    output_dir: Optional[Path] = None
    verbose: bool = False


@dataclass
class AcquisitionConfig:
    mode: str = "serial"
    analog: AnalogModelConfig = field(default_factory=AnalogModelConfig)
    serial: SerialSettings = field(default_factory=SerialSettings)
    ble: BleSettings = field(default_factory=BleSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    skip_malformed: bool = False

    def __post_init__(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"Unsupported mode '{self.mode}', expected one of {sorted(MODES)}")
        if self.serial.baudrate <= 0:
            raise ValueError("serial.baudrate must be positive")
        if self.ble.scan_seconds < 0:
            raise ValueError("ble.scan_seconds may not be negative")


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def config_from_mapping(data: Dict[str, Any]) -> AcquisitionConfig:
    serial_data = data.get("serial") or {}
    ble_data = data.get("ble") or {}
    output_data = data.get("output") or {}
    adapters = ble_data.get("adapters")
    if isinstance(adapters, str):
        adapters = [adapters]
    port = serial_data.get("port")
    output_dir = output_data.get("output_dir")
    return AcquisitionConfig(
        mode=str(data.get("mode", "serial")).lower(),
        analog=AnalogModelConfig.from_mapping(data.get("analog") or {}),
        serial=SerialSettings(
            port=str(port) if port is not None else None,
            baudrate=int(serial_data.get("baudrate", 115200)),
            timeout=float(serial_data.get("timeout", 0.03)),
        ),
        ble=BleSettings(
            name_filter=str(ble_data.get("name_filter", PERIPHERAL_NAME_MATCH_FILTER)),
            notify_uuid=str(ble_data.get("notify_uuid", NOTIFY_CHARACTERISTIC_UUID)).lower(),
            scan_seconds=float(ble_data.get("scan_seconds", 2.0)),
            adapters=list(adapters) if adapters else [None],
        ),
        output=OutputSettings(
            output_dir=Path(output_dir) if output_dir else None,
            verbose=bool(output_data.get("verbose", False)),
        ),
        skip_malformed=bool(data.get("skip_malformed", False)),
    )


def load_config(
    path: Path | str | None = None,
    overrides: Sequence[str] | None = None,
    values: Dict[str, Any] | None = None,
) -> AcquisitionConfig:
    """
    Build an acquisition configuration from an optional JSON file, already
    typed values (CLI flags) and CLI-style overrides, in that order.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["analog.gain=50", "analog.enable_4ch=true", "serial.port=/dev/ttyUSB0"]
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    if values:
        data = _merge(data, values)
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    return config_from_mapping(_merge(data, override_data))


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
