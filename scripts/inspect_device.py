#!/usr/bin/env python3
"""Show how a login context is fingerprinted.

Prints the parsed device, both device hashes, the network prefixes they use
and the login alert dedup fingerprint. Useful when a user reports being asked
for MFA on a device they trusted, or receiving repeated login alerts.

Usage:
    python scripts/inspect_device.py --user-agent "Mozilla/5.0 ..." --ip 203.0.113.7

    # Resolve the address as well (GEOIP_URL or --geoip-url, '{ip}' is replaced):
    python scripts/inspect_device.py --user-agent "..." --ip 8.8.8.8 --geoip-url "http://ip-api.com/json/{ip}"

Environment Variables:
    INSPECT_USER_AGENT: Default for --user-agent
    INSPECT_ACCEPT_LANGUAGE: Default for --accept-language
    GEOIP_URL: Default for --geoip-url
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def inspect_device(
    user_agent: str | None,
    accept_language: str | None,
    ip_address: str | None,
    geoip_url: str | None = None,
) -> dict:
    from trustgate.service.fingerprint import (
        alerting_subnet,
        hash_for_alerting,
        hash_for_trust,
        parse_user_agent,
        primary_language,
        trust_network,
    )
    from trustgate.service.geolocation import HttpGeoResolver, format_location
    from trustgate.service.login_alerts import alert_fingerprint

    parsed = parse_user_agent(user_agent)
    report = {
        "device": {
            "browser": parsed.browser,
            "browser_version": parsed.browser_version,
            "os": parsed.os,
            "os_version": parsed.os_version,
            "device_type": parsed.device_type,
            "device_name": parsed.device_name,
        },
        "language": primary_language(accept_language),
        "trust_network": trust_network(ip_address),
        "alerting_subnet": alerting_subnet(ip_address),
        "trust_hash": hash_for_trust(user_agent, accept_language, ip_address),
        "alerting_hash": hash_for_alerting(user_agent, ip_address),
        "alert_fingerprint": alert_fingerprint(user_agent, ip_address),
    }

    if geoip_url and ip_address:
        location = await HttpGeoResolver(geoip_url).locate(ip_address)
        report["location"] = format_location(location)
        if location is not None:
            report["coordinates"] = (
                [location.latitude, location.longitude] if location.has_coordinates else None
            )
    return report


def main():
    parser = argparse.ArgumentParser(
        description="Inspect device fingerprints for a login context",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-agent",
        default=os.environ.get("INSPECT_USER_AGENT"),
        help="User-Agent header (or set INSPECT_USER_AGENT env var)",
    )
    parser.add_argument(
        "--accept-language",
        default=os.environ.get("INSPECT_ACCEPT_LANGUAGE"),
        help="Accept-Language header (or set INSPECT_ACCEPT_LANGUAGE env var)",
    )
    parser.add_argument("--ip", dest="ip_address", help="Client IP address")
    parser.add_argument(
        "--geoip-url",
        default=os.environ.get("GEOIP_URL"),
        help="Geolocation endpoint template containing '{ip}'",
    )
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    args = parser.parse_args()

    if not args.user_agent and not args.ip_address:
        print("Error: --user-agent or --ip is required")
        sys.exit(1)

    try:
        report = asyncio.run(
            inspect_device(args.user_agent, args.accept_language, args.ip_address, args.geoip_url)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(report, indent=2))
        return

    device = report["device"]
    print(f"Device:           {device['device_name']} ({device['device_type']})")
    print(f"Browser:          {device['browser']} {device['browser_version']}".rstrip())
    print(f"Language:         {report['language']}")
    print(f"Trust network:    {report['trust_network']}")
    print(f"Alerting subnet:  {report['alerting_subnet']}")
    print(f"Trust hash:       {report['trust_hash']}")
    print(f"Alerting hash:    {report['alerting_hash']}")
    print(f"Alert dedup key:  {report['alert_fingerprint']}")
    if "location" in report:
        print(f"Location:         {report['location']}")


if __name__ == "__main__":
    main()
