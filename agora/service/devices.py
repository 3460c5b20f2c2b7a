from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from user_agents import parse


@dataclass
class DeviceMetadata:
    device_name: str
    user_agent: Optional[str]
    ip_address: Optional[str]


def _family(value: Optional[str], fallback: str) -> str:
    if not value or value == "Other":
        return fallback
    return value


def device_name(user_agent: Optional[str]) -> str:
    """Human label such as ``"Chrome on Windows"`` for a User-Agent header."""
    ua = parse(user_agent or "")
    browser = _family(ua.browser.family, "Unknown browser")
    os_name = _family(ua.os.family, "Unknown OS")
    return f"{browser} on {os_name}"


def describe_device(user_agent: Optional[str], ip_address: Optional[str]) -> DeviceMetadata:
    return DeviceMetadata(
        device_name=device_name(user_agent),
        user_agent=user_agent,
        ip_address=ip_address,
    )
