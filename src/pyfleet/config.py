"""Agent configuration for pyfleet."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from typing import Any

from pyfleet.exceptions import FleetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env: Mapping[str, str], key: str, cast: type[int] | type[float]) -> Any:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError as exc:
        raise FleetConfigError(f"{key} must be a number, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Parameters
    ----------
    max_attempts : int
        Total number of attempts, including the first one.
    initial_delay : float
        Delay in seconds before the first retry.
    max_delay : float
        Upper bound for any single delay.
    multiplier : float
        Growth factor applied per attempt.
    """

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise FleetConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise FleetConfigError("retry delays must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number *attempt* (1-based)."""
        exponent = max(0, attempt - 1)
        return min(self.max_delay, self.initial_delay * (self.multiplier**exponent))


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Agent configuration.

    Parameters
    ----------
    thing_name : str
        Device identity reported in every status snapshot and used to
        build the per-device topics.
    broker_host : str
        MQTT broker hostname.
    broker_port : int
        MQTT broker port.
    client_id : str or None
        MQTT client id. Defaults to ``thing_name``.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    ca_path, cert_path, key_path : str or None
        TLS material handed to the MQTT client unchanged.
    job_fetch_timeout : float
        Seconds to wait for a single job-document fetch.
    publish_ack_timeout : float
        Seconds to wait for a job status update to be accepted before the
        publish is retried.
    startup_timeout : float
        Seconds a ``startup`` step may take before it counts as a failure.
    startup_health_window : float
        Seconds a ``run`` step must survive without exiting non-zero
        before the component is considered ``RUNNING``.
    shutdown_timeout : float
        Seconds a ``shutdown`` step may take.
    component_retry_limit : int
        Failed attempts after which a component becomes ``BROKEN``.
    component_retry_delay : float
        Seconds between component retries.
    settle_timeout : float
        Seconds a deployment waits for affected components to settle.
    status_debounce : float
        Window in which status triggers are coalesced into one publish.
    status_interval : float
        Period of the unconditional status publish. ``0`` disables it.
    transient_retry : RetryPolicy
        Backoff for transient network failures (job-document fetch,
        status publishes).
    publish_retry : RetryPolicy
        Backoff for unacknowledged job status updates.
    state_dir : str or None
        Directory where the last applied desired state is persisted.
    artifact_root : str or None
        Root of the local artifact store. ``None`` skips artifact
        resolution.
    history_size : int
        Number of terminal deployments retained for audit.
    """

    thing_name: str
    broker_host: str = "localhost"
    broker_port: int = 8883
    client_id: str | None = None
    mqtt_keepalive: int = 60
    mqtt_tls: bool = True
    ca_path: str | None = None
    cert_path: str | None = None
    key_path: str | None = None
    job_fetch_timeout: float = 30.0
    publish_ack_timeout: float = 10.0
    startup_timeout: float = 120.0
    startup_health_window: float = 1.0
    shutdown_timeout: float = 15.0
    component_retry_limit: int = 3
    component_retry_delay: float = 1.0
    settle_timeout: float = 300.0
    status_debounce: float = 2.0
    status_interval: float = 24 * 3600
    transient_retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)
    publish_retry: RetryPolicy = dataclasses.field(
        default_factory=lambda: RetryPolicy(max_attempts=3, initial_delay=2.0, max_delay=30.0)
    )
    state_dir: str | None = None
    artifact_root: str | None = None
    history_size: int = 50

    def __post_init__(self) -> None:
        if not self.thing_name or not self.thing_name.strip():
            raise FleetConfigError("thing_name must be non-empty")
        if self.component_retry_limit < 1:
            raise FleetConfigError(f"component_retry_limit must be >= 1, got {self.component_retry_limit}")

    @property
    def mqtt_client_id(self) -> str:
        return self.client_id or self.thing_name

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from environment variables.

        Reads ``FLEET_THING_NAME`` and optional ``FLEET_*`` variables.
        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        FleetConfig
            Populated configuration.

        Raises
        ------
        FleetConfigError
            If a numeric variable cannot be parsed.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "FLEET_THING_NAME": "thing_name",
            "FLEET_BROKER_HOST": "broker_host",
            "FLEET_CLIENT_ID": "client_id",
            "FLEET_CA_PATH": "ca_path",
            "FLEET_CERT_PATH": "cert_path",
            "FLEET_KEY_PATH": "key_path",
            "FLEET_STATE_DIR": "state_dir",
            "FLEET_ARTIFACT_ROOT": "artifact_root",
        }
        _ENV_NUMBER_MAP: dict[str, tuple[str, type[int] | type[float]]] = {
            "FLEET_BROKER_PORT": ("broker_port", int),
            "FLEET_MQTT_KEEPALIVE": ("mqtt_keepalive", int),
            "FLEET_JOB_FETCH_TIMEOUT": ("job_fetch_timeout", float),
            "FLEET_PUBLISH_ACK_TIMEOUT": ("publish_ack_timeout", float),
            "FLEET_STARTUP_TIMEOUT": ("startup_timeout", float),
            "FLEET_STARTUP_HEALTH_WINDOW": ("startup_health_window", float),
            "FLEET_SHUTDOWN_TIMEOUT": ("shutdown_timeout", float),
            "FLEET_COMPONENT_RETRY_LIMIT": ("component_retry_limit", int),
            "FLEET_COMPONENT_RETRY_DELAY": ("component_retry_delay", float),
            "FLEET_SETTLE_TIMEOUT": ("settle_timeout", float),
            "FLEET_STATUS_DEBOUNCE": ("status_debounce", float),
            "FLEET_STATUS_INTERVAL": ("status_interval", float),
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, (field_name, cast) in _ENV_NUMBER_MAP.items():
            if field_name in overrides:
                continue
            parsed = _env_number(env, env_key, cast)
            if parsed is not None:
                config_kwargs[field_name] = parsed

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("FLEET_MQTT_TLS"), True)

        config_kwargs.update(overrides)
        if "thing_name" not in config_kwargs:
            raise FleetConfigError("FLEET_THING_NAME is not set")

        return cls(**config_kwargs)
