"""Command-line interface for the liquidation guard pipeline."""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from .config import load_config
from .inputs import load_incident
from .logging_setup import configure_logging
from .services import Orchestrator, build_context, validate_plan


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="liquidation-guard",
        description="Liquidation risk assessment and protection planning",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    for name, help_text in (
        ("assess", "Time-to-breach assessment for a position"),
        ("plan", "Assess, optimize and validate a protection plan"),
        ("protect", "Run the full incident pipeline including execution handoff"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("input", help="Incident input YAML (position, policy, user, venues)")

    return parser


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    """Execute the selected command and return its JSON-ready result."""
    configure_logging(args.log_level)
    config = load_config(args.config, allow_missing=args.config is None)
    incident = load_incident(args.input)
    orchestrator = Orchestrator(build_context(config))

    if args.command == "protect":
        report = await orchestrator.handle_incident(
            incident.position,
            incident.policy,
            incident.user,
            incident.venues,
            incident.prices,
        )
        return report.to_dict()

    prices = await orchestrator.fetch_prices(incident.position, incident.prices)
    risk = await orchestrator.assess(incident.position, prices)
    if args.command == "assess":
        return risk.to_dict()

    optimization = await orchestrator.optimize(
        incident.position, incident.policy, risk, incident.venues, prices
    )
    validation = validate_plan(optimization.primary_plan, incident.policy, incident.user)
    return {
        "risk": risk.to_dict(),
        "optimization": optimization.to_dict(),
        "validation": validation.to_dict(),
    }


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    result = asyncio.run(_run(args))
    json.dump(result, sys.stdout, indent=2)
    sys.stdout.write("\n")


if __name__ == "__main__":
    main()
