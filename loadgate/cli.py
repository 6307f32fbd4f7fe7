"""
🚀 loadgate command line
========================
Usage:
    loadgate run --config vote.json
    loadgate run --config vote.json --base-url http://staging:8080 --output summary.json
    loadgate preset http://localhost:8080/api/groups spike
    loadgate preset http://localhost:8080/api/groups stress --i-know-what-im-doing
    loadgate presets

Exit codes: 0 all thresholds passed, 1 a threshold failed, 2 configuration error.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from rich.logging import RichHandler
from rich.panel import Panel

from .config import RunConfig, load_config
from .errors import ConfigurationError
from .presets import CATEGORIES, PRESETS, build_preset_config, get_preset
from .report import console, print_summary, run_with_live, write_json_report
from .result import RunResult

logger = logging.getLogger(__name__)

EXIT_PASSED = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_CONFIG_ERROR = 2

BASE_URL_ENV = "LOADGATE_BASE_URL"


def setup_logging(verbosity: int):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbosity > 1)],
        force=True,
    )


def print_presets():
    console.print("\n[bold]Available Presets:[/bold]\n")
    for category, names in CATEGORIES:
        console.print(f"[bold cyan]{category}:[/bold cyan]")
        for name in names:
            preset = PRESETS[name]
            danger_flag = "[red]⚠️ DANGEROUS[/red] " if preset.get("dangerous") else ""
            console.print(f"  {name:<10} {preset['name']:<22} {danger_flag}- {preset['description']}")
        console.print("")


def print_banner(config: RunConfig):
    lines = [f"[bold blue]{config.name}[/bold blue]", f"Target: {config.base_url}"]
    for scenario in config.scenarios:
        flows = ", ".join(f"{flow.name} {p:.0%}" for flow, p in scenario.flows.probabilities())
        start = f" +{scenario.start_time:g}s" if scenario.start_time else ""
        lines.append(f"  • {scenario.name}{start}: {scenario.profile} [{flows}]")
    if config.thresholds:
        lines.append(f"Thresholds: {len(config.thresholds)}")
    console.print(Panel("\n".join(lines), title="🚀 Starting Test"))


async def execute(config: RunConfig, show_live: bool = True) -> RunResult:
    async with config.create_target() as target:
        scheduler = config.create_scheduler(target)
        return await run_with_live(scheduler, show_live)


def run_config(config: RunConfig, output: Optional[str] = None, show_live: bool = True) -> int:
    print_banner(config)
    result = asyncio.run(execute(config, show_live))
    print_summary(result)
    if output:
        write_json_report(result, output)
    return EXIT_PASSED if result.passed else EXIT_THRESHOLDS_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadgate",
        description="🚀 Load generation and SLO verification for HTTP services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info, -vv for debug logging")
    sub = parser.add_subparsers(dest="command")

    def add_common(p: argparse.ArgumentParser):
        p.add_argument("--output", "-o", type=str, help="Write the JSON summary to this file")
        p.add_argument("--no-live", action="store_true", help="Disable the live progress table")

    run = sub.add_parser("run", help="Run a JSON config")
    run.add_argument("--config", "-c", required=True, help="Path to the run config")
    run.add_argument("--base-url", "-u", help=f"Override base_url (default: ${BASE_URL_ENV} or the config)")
    add_common(run)

    preset = sub.add_parser("preset", help="Run a preset against a single URL")
    preset.add_argument("url", help="Target URL")
    preset.add_argument("name", help="Preset name (see 'loadgate presets')")
    preset.add_argument("--method", "-m", default="GET", choices=["GET", "POST", "PUT", "DELETE", "PATCH"])
    preset.add_argument("--i-know-what-im-doing", dest="dangerous_confirmed", action="store_true",
                        help="Allow presets marked dangerous")
    add_common(preset)

    sub.add_parser("presets", help="List presets")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return EXIT_CONFIG_ERROR
    if args.command == "presets":
        print_presets()
        return EXIT_PASSED

    try:
        if args.command == "run":
            config = load_config(args.config, base_url=args.base_url or os.environ.get(BASE_URL_ENV))
        else:
            preset = get_preset(args.name)
            if preset.get("dangerous") and not args.dangerous_confirmed:
                console.print(Panel(
                    f"[bold red]⚠️  WARNING: {preset['name']} is DANGEROUS![/bold red]\n\n"
                    f"{preset['description']}\n\n"
                    f"[yellow]Only use on systems you own or have permission to test![/yellow]\n"
                    f"Re-run with --i-know-what-im-doing to proceed.",
                    title="⚠️ Dangerous Preset",
                    border_style="red",
                ))
                return EXIT_CONFIG_ERROR
            config = load_config(build_preset_config(args.url, args.name, args.method))
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return EXIT_CONFIG_ERROR

    try:
        return run_config(config, output=args.output, show_live=not args.no_live)
    except KeyboardInterrupt:
        console.print("[dim]Interrupted.[/dim]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
