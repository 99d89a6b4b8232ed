"""Agent configuration for edgetwin."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from edgetwin.exceptions import ConfigError
from edgetwin.models.update import UpdatePolicy


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class AgentConfig:
    """Device agent configuration.

    Parameters
    ----------
    device_id : str
        Device identity. Used as the MQTT client id and in the
        device-scoped topics.
    host : str
        MQTT broker host name of the control plane.
    port : int
        MQTT broker port. Defaults to ``8883`` (MQTT over TLS).
    username : str or None
        Broker user name, if the broker requires one.
    password : str or None
        Broker password or pre-issued access token.
    use_tls : bool
        Wrap the connection in TLS with the system trust store.
    keepalive : int
        MQTT keepalive in seconds.
    connect_timeout : float
        Seconds to wait for the broker to acknowledge the connection.
    twin_timeout : float
        Seconds to wait for the control plane to acknowledge a
        reported-state patch.
    stage_delay : float
        Simulated duration of each firmware update stage in seconds.
    initial_firmware_version : str
        Firmware version reported on every start.
    update_policy : UpdatePolicy
        What to do with a firmware update requested while another one is
        still running.
    abort_on_publish_failure : bool
        Stop a firmware update (and report it as failed) when one of its
        stages cannot be published. When ``False`` the remaining stages
        run regardless.
    """

    device_id: str
    host: str
    port: int = 8883
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    keepalive: int = 60
    connect_timeout: float = 10.0
    twin_timeout: float = 10.0
    stage_delay: float = 5.0
    initial_firmware_version: str = "1.0"
    update_policy: UpdatePolicy = UpdatePolicy.COALESCE
    abort_on_publish_failure: bool = True

    @classmethod
    def from_env(cls, **overrides: Any) -> AgentConfig:
        """Create configuration from environment variables.

        Reads ``EDGETWIN_DEVICE_ID``, ``EDGETWIN_HOST`` and the optional
        ``EDGETWIN_*`` variables below. Explicit keyword arguments
        override environment values.

        Raises
        ------
        ConfigError
            When the device id or broker host is missing, or a numeric
            or enum variable cannot be parsed.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "EDGETWIN_DEVICE_ID": "device_id",
            "EDGETWIN_HOST": "host",
            "EDGETWIN_USERNAME": "username",
            "EDGETWIN_PASSWORD": "password",
            "EDGETWIN_INITIAL_FIRMWARE_VERSION": "initial_firmware_version",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_NUMERIC_MAP: dict[str, tuple[str, type]] = {
            "EDGETWIN_PORT": ("port", int),
            "EDGETWIN_KEEPALIVE": ("keepalive", int),
            "EDGETWIN_CONNECT_TIMEOUT": ("connect_timeout", float),
            "EDGETWIN_TWIN_TIMEOUT": ("twin_timeout", float),
            "EDGETWIN_STAGE_DELAY": ("stage_delay", float),
        }
        for env_key, (field_name, cast) in _ENV_NUMERIC_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = cast(val)
            except ValueError as exc:
                raise ConfigError(f"{env_key} must be a number, got {val!r}") from exc

        policy_env = env.get("EDGETWIN_UPDATE_POLICY")
        if policy_env is not None and "update_policy" not in overrides:
            try:
                config_kwargs["update_policy"] = UpdatePolicy(policy_env.strip().lower())
            except ValueError as exc:
                allowed = ", ".join(p.value for p in UpdatePolicy)
                raise ConfigError(f"EDGETWIN_UPDATE_POLICY must be one of {allowed}, got {policy_env!r}") from exc

        if "use_tls" not in overrides:
            config_kwargs["use_tls"] = _env_bool(env.get("EDGETWIN_USE_TLS"), True)

        if "abort_on_publish_failure" not in overrides:
            config_kwargs["abort_on_publish_failure"] = _env_bool(
                env.get("EDGETWIN_ABORT_ON_PUBLISH_FAILURE"),
                True,
            )

        config_kwargs.update(overrides)

        for required in ("device_id", "host"):
            value = config_kwargs.get(required)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"Missing required setting {required!r} (EDGETWIN_{required.upper()})")

        return cls(**config_kwargs)
