#!/usr/bin/env python3
"""Download the latest UK Fuel Finder price CSV and save it as CSV or nested JSON.

Usage:
  python3 scripts/download_fuel_prices.py --out data.csv
  python3 scripts/download_fuel_prices.py --format json --output prices.json
  FUEL_PROXY_TEMPLATE="https://proxy.example/?url={url}" python3 scripts/download_fuel_prices.py
"""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

import yaml

from fuel_finder_common import configure_logging, format_exception_message, log_event
from fuel_finder_csv import ConversionError, CsvValidationError, convert_csv_to_json, validate_csv
from fuel_finder_fetch import (
    DEFAULT_TIMEOUT_SECONDS,
    FetchError,
    FuelFinderClient,
    build_fuel_finder_targets,
)

DEFAULT_CSV_OUT = "data.csv"
DEFAULT_JSON_OUT = "data.json"
DEFAULT_FORMAT = "csv"
SUPPORTED_FORMATS = ("csv", "json")

ENV_OUT = "FUEL_OUT"
ENV_FORMAT = "FUEL_FORMAT"
ENV_PROXY_TEMPLATE = "FUEL_PROXY_TEMPLATE"


@dataclass
class DownloadSettings:
    out_path: str
    output_format: str
    proxy_template: Optional[str] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    progress: bool = False


TRUE_WORDS = frozenset({"1", "true", "yes", "y", "on"})
FALSE_WORDS = frozenset({"0", "false", "no", "n", "off"})


def _config_flag(key: str, value: object) -> bool:
    """Read a config switch such as ``progress: yes`` or ``verbose: 0``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    word = value.strip().lower() if isinstance(value, str) else None
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise SystemExit(f"config key {key!r}: expected a yes/no value, got {value!r}")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise SystemExit(f"config file not found: {path}")
    loaders = {".yaml": yaml.safe_load, ".yml": yaml.safe_load, ".json": json.loads}
    loader = loaders.get(path.suffix.lower())
    if loader is None:
        raise SystemExit(f"config file {path.name}: use a .yaml, .yml or .json file")
    try:
        data = loader(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, ValueError) as exc:
        raise SystemExit(f"config file {path.name}: {format_exception_message(exc)}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit(f"config file {path.name}: top level must be a mapping")
    return data


def flatten_config(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Join nested section names with ``_`` (``fetch: {timeout_seconds: 5}`` -> ``fetch_timeout_seconds``)."""
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flattened.update(flatten_config(value, prefix=f"{name}_"))
        else:
            flattened[name] = value
    return flattened


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    scalar_map = {
        "out": "out",
        "output_path": "out",
        "output_out": "out",
        "output": "output",
        "format": "format",
        "output_format": "format",
        "proxy_template": "proxy_template",
        "fetch_proxy_template": "proxy_template",
        "network_proxy_template": "proxy_template",
        "timeout_seconds": "timeout_seconds",
        "fetch_timeout_seconds": "timeout_seconds",
        "network_timeout_seconds": "timeout_seconds",
    }
    bool_map = {
        "progress": "progress",
        "fetch_progress": "progress",
        "verbose": "verbose",
        "logging_verbose": "verbose",
    }
    for source_key, target_key in scalar_map.items():
        if source_key in cfg:
            value = cfg[source_key]
            defaults[target_key] = "" if value is None else value
    for source_key, target_key in bool_map.items():
        if source_key in cfg:
            defaults[target_key] = _config_flag(source_key, cfg[source_key])
    if "timeout_seconds" in defaults:
        try:
            defaults["timeout_seconds"] = float(defaults["timeout_seconds"])
        except (TypeError, ValueError) as exc:
            value = defaults["timeout_seconds"]
            raise SystemExit(f"config key 'timeout_seconds': expected a number, got {value!r}") from exc
    return defaults


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", help="Path to YAML/JSON config file.")
    pre_args, _ = pre_parser.parse_known_args(argv)
    config_defaults: Dict[str, Any] = {}
    if pre_args.config:
        config_defaults = config_to_parser_defaults(load_config_file(Path(pre_args.config)))

    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--config", help="Path to YAML/JSON config file.")
    parser.add_argument(
        "--out",
        default=None,
        help=f"Output path. Falls back to {ENV_OUT}, then '{DEFAULT_CSV_OUT}'.",
    )
    parser.add_argument(
        "--output",
        default="",
        help="Output path; overrides --out when given.",
    )
    parser.add_argument(
        "--format",
        default=None,
        help=f"Output format: csv or json. Falls back to {ENV_FORMAT}, then '{DEFAULT_FORMAT}'.",
    )
    parser.add_argument(
        "--proxy-template",
        default=None,
        help=(
            "Fallback proxy URL template tried after the direct request fails. "
            "'{url}' is replaced by the escaped upstream URL; otherwise the URL is appended. "
            f"Falls back to {ENV_PROXY_TEMPLATE}."
        ),
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help="HTTP timeout in seconds for each fetch attempt.",
    )
    parser.add_argument("--progress", action="store_true", help="Show a download progress bar on stderr.")
    parser.add_argument("--verbose", action="store_true", help="Log fetch/convert events to stderr.")

    if config_defaults:
        parser.set_defaults(**config_defaults)

    return parser.parse_args(argv)


def resolve_settings(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> DownloadSettings:
    env = os.environ if environ is None else environ

    out_path = args.out if args.out is not None else env.get(ENV_OUT, DEFAULT_CSV_OUT)
    if args.output:
        out_path = args.output
    output_format = args.format if args.format is not None else env.get(ENV_FORMAT, DEFAULT_FORMAT)
    proxy_template = args.proxy_template if args.proxy_template is not None else env.get(ENV_PROXY_TEMPLATE)

    if output_format == "json" and out_path == DEFAULT_CSV_OUT:
        out_path = DEFAULT_JSON_OUT

    if not out_path:
        raise SystemExit("output path cannot be empty")
    if output_format not in SUPPORTED_FORMATS:
        raise SystemExit(f"unsupported format: {output_format}")
    if args.timeout_seconds <= 0:
        raise SystemExit("--timeout-seconds must be greater than 0.")

    return DownloadSettings(
        out_path=str(out_path),
        output_format=output_format,
        proxy_template=proxy_template,
        timeout_seconds=args.timeout_seconds,
        progress=bool(args.progress),
    )


def write_output(path: Path, payload: bytes) -> None:
    path.write_bytes(payload)


def run(settings: DownloadSettings, client: Optional[FuelFinderClient] = None) -> bytes:
    """Fetch, validate and optionally convert the dataset, then write it to ``settings.out_path``."""
    owns_client = client is None
    if client is None:
        client = FuelFinderClient(timeout_seconds=settings.timeout_seconds, progress=settings.progress)
    try:
        payload = client.fetch(build_fuel_finder_targets(settings.proxy_template))
    except FetchError as exc:
        raise SystemExit(format_exception_message(exc)) from exc
    finally:
        if owns_client:
            client.close()

    try:
        rows = validate_csv(payload)
    except CsvValidationError as exc:
        raise SystemExit(f"invalid CSV: {exc}") from exc
    log_event("CSV_VALID", rows=rows, bytes=len(payload))

    if settings.output_format == "json":
        try:
            payload = convert_csv_to_json(payload)
        except ConversionError as exc:
            raise SystemExit(f"convert to JSON: {exc}") from exc
        log_event("JSON_CONVERTED", bytes=len(payload))

    out_path = Path(settings.out_path)
    try:
        write_output(out_path, payload)
    except OSError as exc:
        raise SystemExit(f"write output: {format_exception_message(exc)}") from exc
    log_event("OUTPUT_WRITTEN", path=out_path, format=settings.output_format, bytes=len(payload))
    return payload


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(verbose=args.verbose)
    settings = resolve_settings(args)
    run(settings)


if __name__ == "__main__":
    main()
