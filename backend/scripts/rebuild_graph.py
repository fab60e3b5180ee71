from __future__ import annotations

# ruff: noqa: E402
import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from routegraph.errors import GraphPublishConflict, GraphValidationError
from routegraph.models import RouteOut
from routegraph.services import Services, build_services, search_routes


def _search_report(services: Services, from_city: str, to_city: str, passengers: int) -> dict[str, Any]:
    rated = search_routes(services, from_city, to_city, passengers=passengers)
    outcome = rated.outcome
    return {
        "success": outcome.success,
        "error_code": outcome.error.value if outcome.error is not None else None,
        "message": outcome.message,
        "data_mode": outcome.data_mode.value,
        "data_quality": outcome.data_quality,
        "graph_version": outcome.version,
        "routes": [RouteOut.from_result(r.route, r.risk).model_dump() for r in rated.routes],
        "alternatives": [RouteOut.from_result(r.route, r.risk).model_dump() for r in rated.alternatives],
    }


def run(args: argparse.Namespace, services: Services | None = None) -> tuple[int, dict[str, Any]]:
    services = services or build_services(region=args.region)
    report: dict[str, Any] = {}

    if args.rollback is not None:
        try:
            report["rollback"] = {"version": services.builder.rollback(int(args.rollback))}
        except (GraphValidationError, GraphPublishConflict) as exc:
            report["rollback"] = {"error": str(exc)}
            return 1, report
    elif not args.skip_build:
        result = services.pipeline.run()
        report["pipeline"] = result.as_dict()
        if result.status is None or result.status.value != "success":
            return 1, report

    report["current_version"] = services.repository.current_version()
    report["retained_versions"] = services.builder.versions()
    report["metadata"] = services.builder.metadata()

    if args.search:
        from_city, to_city = args.search
        report["search"] = _search_report(services, from_city, to_city, max(1, int(args.passengers)))
    return 0, report


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rebuild and publish the transport route graph.")
    parser.add_argument("--region", default=None, help="Dataset region to load (defaults to DEFAULT_REGION).")
    parser.add_argument(
        "--search",
        nargs=2,
        metavar=("FROM", "TO"),
        default=None,
        help="Run a route search against the published graph after the rebuild.",
    )
    parser.add_argument("--passengers", type=int, default=1)
    parser.add_argument("--rollback", type=int, default=None, help="Point readers at a retained version instead.")
    parser.add_argument("--skip-build", action="store_true", help="Do not rebuild; only report or search.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    code, report = run(args)
    print(json.dumps(report, indent=2, ensure_ascii=False, default=str))
    return code


if __name__ == "__main__":
    raise SystemExit(main())
