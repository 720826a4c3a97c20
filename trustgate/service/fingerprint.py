"""Privacy-conscious device fingerprints.

Only coarse, browser-provided signals are used (user agent family, primary
language, network prefix). Two hashes exist on purpose:

- ``hash_for_trust`` decides whether a device may skip MFA. It includes the
  /16 (IPv4) or /48 (IPv6) network so a replayed session from another network
  has to pass MFA again.
- ``hash_for_alerting`` feeds login anomaly detection. It uses a narrower /24
  (IPv4) or /64 (IPv6) subnet and no language tag.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import Optional

UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ParsedDevice:
    browser: str
    browser_version: str
    os: str
    os_version: str
    device_type: str
    device_name: str

    def to_dict(self) -> dict:
        return {
            "browser": self.browser,
            "os": self.os,
            "device_type": self.device_type,
            "device_name": self.device_name,
        }


@dataclass(frozen=True)
class DeviceContext:
    """Request attributes a fingerprint is derived from."""

    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    ip_address: Optional[str] = None


_BROWSER_VERSION = {
    "Firefox": re.compile(r"Firefox/([\d.]+)"),
    "Edge": re.compile(r"Edg/([\d.]+)"),
    "Chrome": re.compile(r"Chrome/([\d.]+)"),
    "Safari": re.compile(r"Version/([\d.]+)"),
    "Opera": re.compile(r"(?:Opera|OPR)/([\d.]+)"),
}
_MAC_VERSION = re.compile(r"Mac OS X ([\d_]+)")
_IOS_VERSION = re.compile(r"OS ([\d_]+)")
_ANDROID_VERSION = re.compile(r"Android ([\d.]+)")


def _detect_browser(ua: str) -> str:
    if "Firefox/" in ua:
        return "Firefox"
    if "Edg/" in ua:
        return "Edge"
    if "Chrome/" in ua and "Chromium" not in ua:
        return "Chrome"
    if "Safari/" in ua and "Chrome" not in ua:
        return "Safari"
    if "Opera" in ua or "OPR/" in ua:
        return "Opera"
    return UNKNOWN


def _detect_os(ua: str) -> tuple[str, str, str]:
    """Return (os, os_version, device_type).

    Mobile platforms are checked before macOS and Linux because their user
    agents also carry "like Mac OS X" and "Linux".
    """
    if "Windows NT 10" in ua:
        return "Windows", "10/11", "desktop"
    if "Windows NT 6.3" in ua:
        return "Windows", "8.1", "desktop"
    if "Windows NT 6.1" in ua:
        return "Windows", "7", "desktop"
    if "Android" in ua:
        match = _ANDROID_VERSION.search(ua)
        device_type = "mobile" if "Mobile" in ua else "tablet"
        return "Android", match.group(1) if match else "", device_type
    if "iPhone" in ua or "iPad" in ua:
        match = _IOS_VERSION.search(ua)
        version = match.group(1).replace("_", ".") if match else ""
        return "iOS", version, "tablet" if "iPad" in ua else "mobile"
    if "Mac OS X" in ua:
        match = _MAC_VERSION.search(ua)
        return "macOS", match.group(1).replace("_", ".") if match else "", "desktop"
    if "CrOS" in ua:
        return "Chrome OS", "", "desktop"
    if "Linux" in ua:
        return "Linux", "", "desktop"
    return UNKNOWN, "", "desktop"


def parse_user_agent(user_agent: Optional[str]) -> ParsedDevice:
    """Extract browser, OS and device class from a user agent string."""
    if not user_agent:
        return ParsedDevice(
            browser=UNKNOWN,
            browser_version="",
            os=UNKNOWN,
            os_version="",
            device_type="unknown",
            device_name="Unknown Device",
        )

    browser = _detect_browser(user_agent)
    browser_version = ""
    if browser in _BROWSER_VERSION:
        match = _BROWSER_VERSION[browser].search(user_agent)
        browser_version = match.group(1) if match else ""

    os_name, os_version, device_type = _detect_os(user_agent)
    device_name = f"{browser} on {os_name}" + (f" {os_version}" if os_version else "")
    return ParsedDevice(
        browser=browser,
        browser_version=browser_version,
        os=os_name,
        os_version=os_version,
        device_type=device_type,
        device_name=device_name,
    )


def _parse_ip(raw: Optional[str]) -> Optional[IPv4Address | IPv6Address]:
    if not raw:
        return None
    try:
        addr = ip_address(raw.strip())
    except ValueError:
        return None
    if isinstance(addr, IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def ip_prefix(raw: Optional[str], *, ipv4_octets: int, ipv6_groups: int) -> str:
    """Coarse network identifier, e.g. ``203.0`` or ``2001:0db8:0001``."""
    addr = _parse_ip(raw)
    if addr is None:
        return "unknown"
    if isinstance(addr, IPv4Address):
        return ".".join(str(addr).split(".")[:ipv4_octets])
    return ":".join(addr.exploded.split(":")[:ipv6_groups])


def trust_network(raw: Optional[str]) -> str:
    return ip_prefix(raw, ipv4_octets=2, ipv6_groups=3)


def alerting_subnet(raw: Optional[str]) -> str:
    return ip_prefix(raw, ipv4_octets=3, ipv6_groups=4)


def primary_language(accept_language: Optional[str]) -> str:
    if not accept_language:
        return "unknown"
    tag = accept_language.split(",")[0].split(";")[0].strip()
    return tag or "unknown"


def _digest(*components: str) -> str:
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()


def hash_for_trust(
    user_agent: Optional[str],
    accept_language: Optional[str],
    ip_address: Optional[str],
) -> str:
    """Stable device hash used for trusted-device (skip MFA) decisions."""
    parsed = parse_user_agent(user_agent)
    return _digest(
        parsed.browser,
        parsed.os,
        parsed.device_type,
        primary_language(accept_language),
        trust_network(ip_address),
    )


def hash_for_alerting(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    """Device/location hash compared against session history for login alerts."""
    parsed = parse_user_agent(user_agent)
    return _digest(
        parsed.browser,
        parsed.os,
        parsed.device_type,
        alerting_subnet(ip_address),
    )


def trust_hash_for(device: DeviceContext) -> str:
    return hash_for_trust(device.user_agent, device.accept_language, device.ip_address)
