"""
Ops commands

    python -m quiz_engine.cli reconcile QUIZ_ID
    python -m quiz_engine.cli validate QUIZ_ID [--user USER_ID]

Both print a JSON report and exit with status 1 when the run failed or
found violations.
"""
import argparse
import json
import logging
import sys

from quiz_engine.config import settings
from quiz_engine.container import build_container
from quiz_engine.database import init_db
from quiz_engine.exceptions import QuizEngineError

logger = logging.getLogger(__name__)


def reconcile(engine, args) -> int:
    report = engine.sync.reconcile(args.quiz_id)
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0 if report.success else 1


def validate(engine, args) -> int:
    if args.user:
        report = engine.validator.validate_participant(args.quiz_id, args.user)
    else:
        report = engine.validator.validate_quiz(args.quiz_id)
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 0 if report.valid else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quiz_engine", description="Quiz answer engine operations")
    commands = parser.add_subparsers(dest="command", required=True)

    reconcile_cmd = commands.add_parser("reconcile", help="Sync a quiz session into the database")
    reconcile_cmd.add_argument("quiz_id")
    reconcile_cmd.set_defaults(handler=reconcile)

    validate_cmd = commands.add_parser("validate", help="Check stored quiz data for invariant violations")
    validate_cmd.add_argument("quiz_id")
    validate_cmd.add_argument("--user", help="Limit the check to one participant")
    validate_cmd.set_defaults(handler=validate)

    return parser


def main(argv=None, engine=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )

    if engine is None:
        init_db()
        engine = build_container()

    try:
        return args.handler(engine, args)
    except QuizEngineError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print(json.dumps({"error": e.error_code, "message": e.message}))
        return 1
    finally:
        engine.dispatcher.shutdown(wait=True)


if __name__ == "__main__":
    sys.exit(main())
