"""Command-line entrypoints for the geoqueue geocoder."""
from __future__ import annotations

import argparse
import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import orjson
import tomllib
from dotenv import load_dotenv
from pydantic import ValidationError

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from geoqueue.geocode.models import Coordinate, GeocodeSettings
from geoqueue.geocode.service import GeocodeService
from geoqueue.observability.log import configure_logging
from geoqueue.observability.metrics import record_duration

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_LOGGING = Path("config/logging.yaml")


def load_settings(path: Path) -> Dict[str, object]:
    """Read the TOML configuration file, returning an empty mapping when absent."""
    if not path.exists():
        return {}
    with path.open("rb") as handle:
        return tomllib.load(handle)


def build_geocode_settings(raw: Dict[str, object], *, provider: Optional[str] = None) -> GeocodeSettings:
    """Merge the ``[geocode]`` table with environment and CLI overrides."""
    table = dict(raw.get("geocode", {}) or {})
    if env_provider := os.getenv("GEOQUEUE_PROVIDER"):
        table["provider"] = env_provider
    if env_agent := os.getenv("GEOQUEUE_USER_AGENT"):
        table["user_agent"] = env_agent
    if provider:
        table["provider"] = provider
    return GeocodeSettings.from_mapping(table)


def load_locations(path: Path) -> Dict[str, Coordinate]:
    """Load an ``address -> {latitude, longitude, ...}`` JSON file."""
    try:
        payload = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as exc:
        raise SystemExit(f"Failed to read locations from {path}: {exc}")
    if not isinstance(payload, dict):
        raise SystemExit(f"Expected a JSON object in {path}")
    try:
        return {address: Coordinate.model_validate(value) for address, value in payload.items()}
    except ValidationError as exc:
        raise SystemExit(f"Invalid location in {path}: {exc}")


def _read_addresses(args: argparse.Namespace) -> List[str]:
    addresses = list(args.addresses or [])
    if args.file:
        lines = Path(args.file).read_text(encoding="utf-8").splitlines()
        addresses.extend(line.strip() for line in lines if line.strip())
    return addresses


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="geoqueue", description="Rate-limited geocoding with caching")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS), help="Path to settings TOML")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="Resolve addresses to coordinates")
    resolve.add_argument("addresses", nargs="*", help="Addresses to resolve")
    resolve.add_argument("--file", help="File with one address per line")
    resolve.add_argument("--overrides", help="JSON file of manual address overrides")
    resolve.add_argument("--init-cache", help="JSON file of precomputed coordinates")
    resolve.add_argument("--provider", choices=["nominatim", "photon"], help="Override the configured provider")
    resolve.add_argument("--metrics-out", help="Write run counters to this JSON file")

    settings = sub.add_parser("settings", help="Print the effective geocoder settings")
    settings.add_argument("--provider", choices=["nominatim", "photon"], help="Override the configured provider")

    return parser


async def run_resolve(args: argparse.Namespace, settings: GeocodeSettings) -> Dict[str, Optional[Dict[str, object]]]:
    """Resolve every address named on the command line."""
    addresses = _read_addresses(args)
    async with GeocodeService(settings) as service:
        if args.overrides:
            service.inject_overrides(load_locations(Path(args.overrides)))
        if args.init_cache:
            service.seed_init_cache(load_locations(Path(args.init_cache)))
        with record_duration(service.metrics, "run_duration_ms"):
            resolved = await service.resolve_many(addresses)
        if args.metrics_out:
            run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
            service.metrics.export(path=Path(args.metrics_out), run_id=run_id)
    return {address: loc.model_dump() if loc is not None else None for address, loc in resolved.items()}


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(DEFAULT_LOGGING)
    raw = load_settings(Path(args.settings))
    try:
        settings = build_geocode_settings(raw, provider=getattr(args, "provider", None))
    except ValidationError as exc:
        raise SystemExit(f"Invalid geocode settings: {exc}")

    if args.command == "settings":
        print(orjson.dumps(settings.model_dump(), option=orjson.OPT_INDENT_2).decode())
        return

    if args.command == "resolve":
        if uvloop is not None:
            uvloop.install()
        output = asyncio.run(run_resolve(args, settings))
        print(orjson.dumps(output, option=orjson.OPT_INDENT_2).decode())


if __name__ == "__main__":
    main()
