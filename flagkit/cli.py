"""Flag configuration checker.

Validates a JSON flag configuration and optionally evaluates it for a
subject:

    flagkit-check flags.json
    flagkit-check flags.json --subject user-42 --attr plan=pro --attr country=DE
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from flagkit.core.config import get_settings
from flagkit.core.errors import ConfigurationError
from flagkit.core.feature_flags.engine import FlagEngine
from flagkit.core.feature_flags.models import EvaluationContext
from flagkit.core.feature_flags.schema import load_snapshot
from flagkit.core.feature_flags.validation import validate_snapshot
from flagkit.core.logging.structured import setup_structured_logging


def _parse_attribute(raw: str) -> tuple:
    name, sep, value = raw.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got '{raw}'")
    try:
        parsed: Any = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return name, parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Validate and evaluate a flag configuration")
    parser.add_argument("config", help="Path to the JSON flag configuration")
    parser.add_argument("--subject", help="Subject id to evaluate every flag for")
    parser.add_argument(
        "--attr",
        action="append",
        default=[],
        type=_parse_attribute,
        help="Context attribute NAME=VALUE (VALUE parsed as JSON when possible)",
    )
    parser.add_argument("--flag", action="append", default=[], help="Only evaluate these flags")
    parser.add_argument("--strict", action="store_true", help="Fail on warnings too")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    setup_structured_logging(
        service_name=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT,
        level=settings.LOG_LEVEL.upper(),
        json_output=settings.LOG_JSON,
    )

    try:
        snapshot = load_snapshot(args.config)
    except ConfigurationError as e:
        print(f"Invalid configuration: {e}")
        for error in e.errors:
            print(f"  {'.'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg')}")
        return 2

    issues = validate_snapshot(snapshot)
    for issue in issues:
        print(f"[{issue.severity.upper()}] {issue.code.value}: {issue.message}")

    failing = [i for i in issues if i.severity == "error" or args.strict]
    print(
        f"{len(snapshot.flags)} flags, {len(snapshot.segments)} segments, "
        f"{len(issues)} issue(s)"
    )

    if args.subject is not None:
        attributes: Dict[str, Any] = dict(args.attr)
        context = EvaluationContext(subject_id=args.subject, attributes=attributes)
        engine = FlagEngine()
        results = engine.evaluate_all(context, snapshot)
        for key in sorted(results):
            if args.flag and key not in args.flag:
                continue
            print(json.dumps(results[key].to_dict(), default=str))

    return 1 if failing else 0


if __name__ == "__main__":
    sys.exit(main())
