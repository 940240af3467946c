"""Adapters that physically switch devices on and off."""

from __future__ import annotations

from typing import Protocol
from urllib.parse import quote

import requests  # type: ignore[import-untyped]

from .client import ApiClient, ApiError
from .config import settings
from .utils import logger


class DeviceControlError(RuntimeError):
    """Base class for device control failures."""


class DeviceUnreachable(DeviceControlError):
    """The platform or device did not answer; the call may be retried."""


class DeviceRejected(DeviceControlError):
    """The platform refused the command; retrying will not help."""


class DeviceControl(Protocol):
    """Port for the smart-home platform that owns the devices."""

    def set_power(self, device_id: str, on: bool) -> None:
        ...


class HttpDeviceControl(DeviceControl):
    """Device control over a smart-home bridge exposing a small REST API."""

    def __init__(self, client: ApiClient | None = None) -> None:
        if client is None:
            if not settings.device_control_url:
                raise RuntimeError(
                    "DEVICE_CONTROL_URL is not set; add it to .env or the environment."
                )
            client = ApiClient(
                settings.device_control_url,
                api_key=settings.device_control_token,
                api_key_header="Authorization",
                timeout=settings.device_control_timeout,
            )
        self._client = client

    def set_power(self, device_id: str, on: bool) -> None:
        path = f"/devices/{quote(device_id, safe='')}/power"
        try:
            self._client.request("post", path, json={"on": on})
        except requests.Timeout as exc:
            raise DeviceUnreachable(f"Timed out switching {device_id}: {exc}") from exc
        except requests.RequestException as exc:
            raise DeviceUnreachable(f"Could not reach {device_id}: {exc}") from exc
        except ApiError as exc:
            if exc.status_code is not None and 400 <= exc.status_code < 500:
                raise DeviceRejected(str(exc)) from exc
            raise DeviceUnreachable(str(exc)) from exc
        logger.bind(device_id=device_id, on=on).debug("Device power state set")

    def close(self) -> None:
        self._client.close()


class UnconfiguredDeviceControl(DeviceControl):
    """Stand-in used when no bridge is configured; every call is rejected."""

    def set_power(self, device_id: str, on: bool) -> None:
        raise DeviceRejected("DEVICE_CONTROL_URL is not configured.")


def build_device_control() -> DeviceControl:
    """Return the configured device control adapter."""
    if settings.device_control_url:
        return HttpDeviceControl()
    logger.warning("DEVICE_CONTROL_URL is not set; scheduled actions will fail")
    return UnconfiguredDeviceControl()


__all__ = [
    "DeviceControl",
    "DeviceControlError",
    "DeviceRejected",
    "DeviceUnreachable",
    "HttpDeviceControl",
    "UnconfiguredDeviceControl",
    "build_device_control",
]
