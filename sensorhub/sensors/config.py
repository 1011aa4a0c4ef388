from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from ..change_detector import (
    ACCELERATION_CHANGE_BY,
    ANGULAR_VELOCITY_CHANGE_BY,
    LIGHT_CHANGE_BY,
    PRESSURE_CHANGE_BY_KPA,
    TEMPERATURE_CHANGE_BY_C,
    ThresholdCheck,
    scalar_exceeds,
    vector_exceeds,
)
from ..channels import Channel, ChannelKind, ChannelRegistry, DeliveryMode
from ..errors import ConfigurationError
from ..record import Encoder, scalar_encoder, vector_encoder
from .backends import MockReader, PlaceholderReader, SysfsAttribute, SysfsReader
from .base import SafeReader, SensorReader

logger = logging.getLogger("sensorhub.sensors")

_VALID_BACKENDS = {"mock", "sysfs", "placeholder"}
_CHANNEL_ID_RE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
_COMPONENT_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,31}$")


@dataclass(frozen=True)
class ChannelSpec:
    """Declarative description of a channel, before readers are attached.

    components maps a component name to its record path. A path without a
    slash is a suffix of `path`; anything else is used as-is.
    """

    id: str
    kind: ChannelKind
    threshold: float
    path: str
    components: Tuple[Tuple[str, str], ...] = ()
    magnitude_components: Tuple[str, ...] = ()
    as_int: bool = False
    delivery: DeliveryMode = DeliveryMode.AGGREGATE
    backend: str = "mock"
    backend_settings: Mapping[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def component_paths(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for name, target in self.components:
            out[name] = target if "/" in target else f"{self.path}/{target}"
        return out

    def build_threshold(self) -> ThresholdCheck:
        if self.kind is ChannelKind.SCALAR:
            return scalar_exceeds(self.threshold)
        names = self.magnitude_components or tuple(name for name, _ in self.components)
        return vector_exceeds(self.threshold, names)

    def build_encoder(self) -> Encoder:
        if self.kind is ChannelKind.SCALAR:
            return scalar_encoder(self.path, as_int=self.as_int)
        return vector_encoder(self.component_paths())


_XYZ = (("x", "X"), ("y", "Y"), ("z", "Z"))

DEFAULT_CHANNELS: Tuple[ChannelSpec, ...] = (
    ChannelSpec(
        id="light",
        kind=ChannelKind.SCALAR,
        threshold=LIGHT_CHANGE_BY,
        path="Sensors/Light/Level",
        as_int=True,
    ),
    ChannelSpec(
        id="pressure",
        kind=ChannelKind.SCALAR,
        threshold=PRESSURE_CHANGE_BY_KPA,
        path="Sensors/Pressure/Pressure",
    ),
    ChannelSpec(
        id="temperature",
        kind=ChannelKind.SCALAR,
        threshold=TEMPERATURE_CHANGE_BY_C,
        path="Sensors/Pressure/Temperature",
    ),
    ChannelSpec(
        id="acceleration",
        kind=ChannelKind.VECTOR,
        threshold=ACCELERATION_CHANGE_BY,
        path="Sensors/Accelerometer/Acceleration",
        components=_XYZ,
    ),
    ChannelSpec(
        id="gyro",
        kind=ChannelKind.VECTOR,
        threshold=ANGULAR_VELOCITY_CHANGE_BY,
        path="Sensors/Accelerometer/Gyro",
        components=_XYZ,
    ),
    # LwM2M location object (6/0): latitude, longitude, altitude, radius.
    ChannelSpec(
        id="position",
        kind=ChannelKind.VECTOR,
        threshold=0.0,
        path="lwm2m/6/0",
        components=(
            ("lat", "0"),
            ("lon", "1"),
            ("alt", "2"),
            ("h_accuracy", "3"),
            ("v_accuracy", "Sensors/Gps/VerticalAccuracy"),
        ),
        magnitude_components=("lat", "lon", "alt"),
        delivery=DeliveryMode.STREAM,
    ),
)


def _read_yaml_object(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(f"SENSOR_CONFIG_PATH does not exist: {path}") from exc
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{path}: invalid YAML: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigurationError(f"{path}: top level must be a YAML object")
    return document


def load_channel_specs_from_env() -> List[ChannelSpec]:
    """Reference channel table, overlaid with SENSOR_CONFIG_PATH and env overrides."""

    raw: Dict[str, Any] = {}
    origin = "defaults"
    config_path = (os.getenv("SENSOR_CONFIG_PATH") or "").strip()
    if config_path:
        path = Path(config_path).expanduser()
        raw = _read_yaml_object(path)
        origin = str(path)

    forced = (os.getenv("SENSOR_BACKEND") or "").strip()
    if forced:
        raw.update(backend=forced, force_backend=True)

    return [_apply_threshold_env(spec) for spec in parse_channel_specs(raw, origin=origin)]


def parse_channel_specs(
    raw: Mapping[str, Any],
    *,
    origin: str,
    defaults: Tuple[ChannelSpec, ...] = DEFAULT_CHANNELS,
) -> List[ChannelSpec]:
    default_backend = _parse_backend(raw.get("backend", "mock"), path=f"{origin}:backend")
    force_backend = bool(raw.get("force_backend", False))

    raw_channels = raw.get("channels")
    if raw_channels is None:
        raw_channels = {}
    if not isinstance(raw_channels, dict):
        raise ConfigurationError(f"{origin}: 'channels' must be an object")

    by_id: Dict[str, ChannelSpec] = {spec.id: replace(spec, backend=default_backend) for spec in defaults}
    order = [spec.id for spec in defaults]

    for raw_key, raw_value in raw_channels.items():
        if not isinstance(raw_key, str) or not _CHANNEL_ID_RE.fullmatch(raw_key):
            raise ConfigurationError(f"{origin}: invalid channel id '{raw_key}'")
        if raw_value is None:
            raw_value = {}
        if not isinstance(raw_value, dict):
            raise ConfigurationError(f"{origin}: channels.{raw_key} must be an object")

        base = by_id.get(raw_key)
        spec = _parse_channel(raw_key, raw_value, base=base, default_backend=default_backend, origin=origin)
        if base is None:
            order.append(raw_key)
        by_id[raw_key] = spec

    specs = [by_id[channel_id] for channel_id in order]
    if force_backend:
        specs = [replace(spec, backend=default_backend) for spec in specs]
    return [spec for spec in specs if spec.enabled]


def _parse_channel(
    channel_id: str,
    raw: Mapping[str, Any],
    *,
    base: ChannelSpec | None,
    default_backend: str,
    origin: str,
) -> ChannelSpec:
    where = f"{origin}: channels.{channel_id}"

    if base is None:
        for required in ("kind", "path", "threshold"):
            if required not in raw:
                raise ConfigurationError(f"{where} is not a known channel and requires '{required}'")
        base = ChannelSpec(
            id=channel_id,
            kind=ChannelKind.SCALAR,
            threshold=0.0,
            path="",
            backend=default_backend,
        )

    changes: Dict[str, Any] = {}

    if "kind" in raw:
        kind_raw = raw.get("kind")
        try:
            changes["kind"] = ChannelKind(str(kind_raw).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(k.value for k in ChannelKind)
            raise ConfigurationError(f"{where}.kind must be one of: {allowed}") from exc

    if "threshold" in raw:
        threshold = _as_float(raw.get("threshold"), message=f"{where}.threshold must be numeric")
        if threshold < 0 or not math.isfinite(threshold):
            raise ConfigurationError(f"{where}.threshold must be a finite number >= 0")
        changes["threshold"] = threshold

    if "path" in raw:
        path = raw.get("path")
        if not isinstance(path, str) or not path.strip():
            raise ConfigurationError(f"{where}.path must be a non-empty string")
        changes["path"] = path.strip().strip("/")

    if "components" in raw:
        changes["components"] = _parse_components(raw.get("components"), where=f"{where}.components")

    if "magnitude" in raw:
        magnitude = raw.get("magnitude")
        if not isinstance(magnitude, list) or not all(isinstance(m, str) for m in magnitude) or not magnitude:
            raise ConfigurationError(f"{where}.magnitude must be a non-empty list of component names")
        changes["magnitude_components"] = tuple(magnitude)

    if "as_int" in raw:
        changes["as_int"] = _as_bool(raw.get("as_int"), message=f"{where}.as_int must be a boolean")

    if "enabled" in raw:
        changes["enabled"] = _as_bool(raw.get("enabled"), message=f"{where}.enabled must be a boolean")

    if "delivery" in raw:
        try:
            changes["delivery"] = DeliveryMode(str(raw.get("delivery")).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(m.value for m in DeliveryMode)
            raise ConfigurationError(f"{where}.delivery must be one of: {allowed}") from exc

    if "backend" in raw:
        changes["backend"] = _parse_backend(raw.get("backend"), path=f"{where}.backend")

    backend_settings = {k: v for k, v in raw.items() if k in _VALID_BACKENDS}
    if backend_settings:
        changes["backend_settings"] = backend_settings

    spec = replace(base, **changes)
    _validate_shape(spec, where=where)
    return spec


def _validate_shape(spec: ChannelSpec, *, where: str) -> None:
    if spec.kind is ChannelKind.SCALAR:
        if spec.components:
            raise ConfigurationError(f"{where}: scalar channels cannot declare components")
        return
    if not spec.components:
        raise ConfigurationError(f"{where}: vector channels require 'components'")
    names = {name for name, _ in spec.components}
    unknown = [m for m in spec.magnitude_components if m not in names]
    if unknown:
        raise ConfigurationError(f"{where}: magnitude refers to unknown components: {', '.join(unknown)}")
    if spec.as_int:
        raise ConfigurationError(f"{where}: as_int applies to scalar channels only")


def _parse_components(value: Any, *, where: str) -> Tuple[Tuple[str, str], ...]:
    if not isinstance(value, dict) or not value:
        raise ConfigurationError(f"{where} must be a non-empty object")
    out: List[Tuple[str, str]] = []
    for name, target in value.items():
        if not isinstance(name, str) or not _COMPONENT_RE.fullmatch(name):
            raise ConfigurationError(f"{where}: invalid component name '{name}'")
        if not isinstance(target, (str, int)) or isinstance(target, bool) or str(target).strip() == "":
            raise ConfigurationError(f"{where}.{name} must be a path string")
        out.append((name, str(target).strip().strip("/")))
    return tuple(out)


def _parse_backend(value: Any, *, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{path}: missing backend string")
    backend = value.strip()
    if backend not in _VALID_BACKENDS:
        allowed = ", ".join(sorted(_VALID_BACKENDS))
        raise ConfigurationError(f"{path}: unsupported backend '{backend}' (allowed: {allowed})")
    return backend


def _apply_threshold_env(spec: ChannelSpec) -> ChannelSpec:
    name = f"THRESHOLD_{spec.id.upper()}"
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return spec
    try:
        value = float(raw.strip())
    except ValueError:
        logger.warning("invalid %s=%r; using %s", name, raw, spec.threshold)
        return spec
    if value < 0 or not math.isfinite(value):
        logger.warning("invalid %s=%r; using %s", name, raw, spec.threshold)
        return spec
    return replace(spec, threshold=value)


def _as_float(value: Any, *, message: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(message)
    if isinstance(value, (int, float)):
        return float(value)
    raise ConfigurationError(message)


def _as_bool(value: Any, *, message: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigurationError(message)


def _mapping_value(value: Any) -> Mapping[str, Any]:
    if isinstance(value, Mapping):
        return value
    return {}


# -----------------------------
# Readers / registry
# -----------------------------


def _sysfs_attribute(raw: Any, *, where: str) -> SysfsAttribute:
    if isinstance(raw, str):
        raw = {"path": raw}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{where} must be a path or an object")
    path = raw.get("path")
    if not isinstance(path, str) or not path.strip():
        raise ConfigurationError(f"{where}.path must be a non-empty string")
    return SysfsAttribute(
        path=Path(path.strip()).expanduser(),
        scale=_as_float(raw.get("scale", 1.0), message=f"{where}.scale must be numeric"),
        offset=_as_float(raw.get("offset", 0.0), message=f"{where}.offset must be numeric"),
    )


def _build_sysfs_reader(spec: ChannelSpec) -> SysfsReader:
    settings = _mapping_value(spec.backend_settings.get("sysfs"))
    where = f"channels.{spec.id}.sysfs"
    if spec.kind is ChannelKind.SCALAR:
        return SysfsReader(attribute=_sysfs_attribute(settings, where=where), as_int=spec.as_int)

    raw_components = settings.get("components")
    if not isinstance(raw_components, Mapping):
        raise ConfigurationError(f"{where}.components must be an object for vector channels")
    components: Dict[str, SysfsAttribute] = {}
    for name, _ in spec.components:
        if name not in raw_components:
            raise ConfigurationError(f"{where}.components is missing '{name}'")
        components[name] = _sysfs_attribute(raw_components[name], where=f"{where}.components.{name}")
    return SysfsReader(components=components)


def build_reader(spec: ChannelSpec, *, device_id: str) -> SensorReader:
    if spec.backend == "mock":
        return MockReader(
            device_id=device_id,
            channel_id=spec.id,
            components=tuple(name for name, _ in spec.components),
        )
    if spec.backend == "sysfs":
        return _build_sysfs_reader(spec)
    return PlaceholderReader(channel_id=spec.id)


def build_channel(spec: ChannelSpec, *, device_id: str) -> Channel:
    reader = SafeReader(name=spec.id, reader=build_reader(spec, device_id=device_id))
    return Channel(
        id=spec.id,
        kind=spec.kind,
        reader=reader.read,
        threshold=spec.build_threshold(),
        encoder=spec.build_encoder(),
        delivery=spec.delivery,
        components=tuple(name for name, _ in spec.components),
    )


def build_registry(specs: List[ChannelSpec], *, device_id: str) -> ChannelRegistry:
    registry = ChannelRegistry()
    for spec in specs:
        registry.register(build_channel(spec, device_id=device_id))
    return registry
