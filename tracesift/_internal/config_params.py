from __future__ import annotations as _annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal, TypeVar, Union

from opentelemetry.sdk.environment_variables import OTEL_EXPORTER_OTLP_ENDPOINT, OTEL_SERVICE_NAME
from typing_extensions import get_args, get_origin

from ..exceptions import TraceSiftConfigError
from .constants import DEFAULT_SHUTDOWN_TIMEOUT_MILLIS, DEFAULT_SLOW_THRESHOLD_MS, DEFAULT_WARNING_THRESHOLD_MS
from .utils import read_toml_file, running_under_pytest

T = TypeVar('T')

slots_true = {'slots': True} if sys.version_info >= (3, 10) else {}


@dataclass(**slots_true)
class ConfigParam:
    """A parameter that can be configured for the trace pipeline."""

    env_vars: list[str]
    """Environment variables to check for the parameter."""
    allow_file_config: bool = False
    """Whether the parameter can be set in the config file."""
    default: Any = None
    """Default value if no other value is found."""
    tp: Any = str
    """Type of the parameter."""


@dataclass
class _DefaultCallback:
    """A default value that is computed at runtime.

    A good example is when we want to check if we are running under pytest and set a default value based on that.
    """

    callback: Callable[[], Any]


_quiet_default = _DefaultCallback(running_under_pytest)
"""When running under pytest, don't log about slow requests by default."""

# fmt: off
ENABLED = ConfigParam(env_vars=['TRACESIFT_ENABLED', 'OTEL_ENABLED'], allow_file_config=True, default=False, tp=bool)
"""Whether spans are exported at all."""
ENDPOINT = ConfigParam(env_vars=['TRACESIFT_ENDPOINT', OTEL_EXPORTER_OTLP_ENDPOINT], allow_file_config=True)
"""Base URL of the OTLP/HTTP collector, e.g. `http://tempo:4318`."""
SERVICE_NAME = ConfigParam(env_vars=['TRACESIFT_SERVICE_NAME', OTEL_SERVICE_NAME], allow_file_config=True, default='unknown_service')
"""Name of the service emitting spans."""
SERVICE_VERSION = ConfigParam(env_vars=['TRACESIFT_SERVICE_VERSION', 'APP_VERSION'], allow_file_config=True, default='unknown')
"""Version of the service emitting spans."""
ENVIRONMENT = ConfigParam(env_vars=['TRACESIFT_ENVIRONMENT'], allow_file_config=True, default='development')
"""Environment the service is running in. `'development'` samples every span by default."""
SAMPLING_MODE = ConfigParam(env_vars=['TRACESIFT_SAMPLING_MODE'], allow_file_config=True, tp=Literal['always', 'rules'])
"""`'always'` to keep every span, `'rules'` to use the rule table. Derived from the environment if not set."""
SLOW_THRESHOLD_MS = ConfigParam(env_vars=['TRACESIFT_SLOW_THRESHOLD_MS'], allow_file_config=True, default=DEFAULT_SLOW_THRESHOLD_MS, tp=float)
"""Spans longer than this are flagged as slow and always exported."""
WARNING_THRESHOLD_MS = ConfigParam(env_vars=['TRACESIFT_WARNING_THRESHOLD_MS'], allow_file_config=True, default=DEFAULT_WARNING_THRESHOLD_MS, tp=float)
"""Spans longer than this are flagged with a warning attribute."""
QUIET = ConfigParam(env_vars=['TRACESIFT_QUIET'], allow_file_config=True, default=_quiet_default, tp=bool)
"""Whether to skip logging warnings about slow requests."""
SHUTDOWN_TIMEOUT_MILLIS = ConfigParam(env_vars=['TRACESIFT_SHUTDOWN_TIMEOUT_MILLIS'], allow_file_config=True, default=DEFAULT_SHUTDOWN_TIMEOUT_MILLIS, tp=float)
"""How long shutdown may spend draining spans before giving up."""
# fmt: on

CONFIG_PARAMS = {
    'enabled': ENABLED,
    'endpoint': ENDPOINT,
    'service_name': SERVICE_NAME,
    'service_version': SERVICE_VERSION,
    'environment': ENVIRONMENT,
    'sampling_mode': SAMPLING_MODE,
    'slow_threshold_ms': SLOW_THRESHOLD_MS,
    'warning_threshold_ms': WARNING_THRESHOLD_MS,
    'quiet': QUIET,
    'shutdown_timeout_millis': SHUTDOWN_TIMEOUT_MILLIS,
}


@dataclass
class ParamManager:
    """Manage parameters for the trace pipeline."""

    config_from_file: dict[str, Any]
    """Config loaded from the config file."""

    @classmethod
    def create(cls, config_dir: Path | None = None) -> ParamManager:
        config_dir = Path(config_dir or os.getenv('TRACESIFT_CONFIG_DIR') or '.')
        config_from_file = _load_config_from_file(config_dir)
        return ParamManager(config_from_file=config_from_file)

    def load_param(self, name: str, runtime: Any = None) -> Any:
        """Load a parameter given its name.

        The parameter is loaded in the following order:
        1. From the runtime argument, if provided.
        2. From the environment variables.
        3. From the config file, if allowed.

        If none of the above is found, the default value is returned.

        Args:
            name: Name of the parameter.
            runtime: Value provided at runtime.

        Returns:
            The value of the parameter.
        """
        if runtime is not None:
            return runtime

        param = CONFIG_PARAMS[name]
        for env_var in param.env_vars:
            value = os.getenv(env_var)
            # `None` (unset) and `''` (empty string) are generally considered the same
            if value:
                return self._cast(value, name, param.tp)

        if param.allow_file_config:
            value = self.config_from_file.get(name)
            if value is not None:
                return self._cast(value, name, param.tp)

        if isinstance(param.default, _DefaultCallback):
            return self._cast(param.default.callback(), name, param.tp)
        return self._cast(param.default, name, param.tp)

    def _cast(self, value: Any, name: str, tp: type[T]) -> T | None:
        if tp is str:
            return value
        if get_origin(tp) is Literal:
            return _check_literal(value, name, tp)
        if get_origin(tp) is Union:  # pragma: no cover
            for arg in get_args(tp):
                try:
                    return self._cast(value, name, arg)
                except TraceSiftConfigError:
                    pass
            raise TraceSiftConfigError(f'Expected {name} to be an instance of one of {get_args(tp)}, got {value!r}')
        if tp is bool:
            return _check_bool(value, name)  # type: ignore
        if tp is float:
            return _check_float(value, name)  # type: ignore
        raise RuntimeError(f'Unexpected type {tp}')  # pragma: no cover


def _check_literal(value: Any, name: str, tp: type[T]) -> T | None:
    if value is None:
        return None
    literals = get_args(tp)
    if value not in literals:
        raise TraceSiftConfigError(f'Expected {name} to be one of {literals}, got {value!r}')
    return value


def _check_bool(value: Any, name: str) -> bool | None:
    if value is None:  # pragma: no cover
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):  # pragma: no branch
        if value.lower() in ('1', 'true', 't'):
            return True
        if value.lower() in ('0', 'false', 'f'):  # pragma: no branch
            return False
    raise TraceSiftConfigError(f'Expected {name} to be a boolean, got {value!r}')


def _check_float(value: Any, name: str) -> float | None:
    if value is None:  # pragma: no cover
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise TraceSiftConfigError(f'Expected {name} to be a number, got {value!r}') from None


def _load_config_from_file(config_dir: Path) -> dict[str, Any]:
    config_file = config_dir / 'pyproject.toml'
    if not config_file.exists():
        return {}
    try:
        data = read_toml_file(config_file)
        return data.get('tool', {}).get('tracesift', {})
    except Exception as exc:
        raise TraceSiftConfigError(f'Invalid config file: {config_file}') from exc
