import argparse
import json
import logging
from pathlib import Path
import signal

from credcheck.batch import BatchRunner
from credcheck.config import get_settings
from credcheck.database import build_session_factory
from credcheck.run_store import add_credentials
from credcheck.schemas import RunOptions


logger = logging.getLogger(__name__)


def parse_ids(value: str) -> list[int]:
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"ids must be comma separated integers: {value!r}") from exc


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate portal credentials for stored companies")
    subparsers = parser.add_subparsers(dest="command", required=True)

    load_parser = subparsers.add_parser("load", help="import credential records from a JSONL file")
    load_parser.add_argument("--input", required=True, help="JSONL file with organization_name, identifier, secret")

    run_parser = subparsers.add_parser("run", help="check credentials against the portal")
    run_parser.add_argument("--ids", type=parse_ids, help="only check these record ids, e.g. 3,7,12")
    run_parser.add_argument(
        "--only-unchecked",
        action="store_true",
        help="skip records that already have a status (resume an interrupted batch)",
    )
    run_parser.add_argument(
        "--trigger-source",
        default="manual",
        choices=["manual", "scheduled"],
        help="Metadata label for how this batch was triggered",
    )

    return parser.parse_args(argv)


def read_jsonl(path: Path) -> list[dict[str, object]]:
    if not path.exists():
        raise FileNotFoundError(f"input file not found: {path}")

    rows: list[dict[str, object]] = []
    with path.open("r", encoding="utf-8") as infile:
        for line in infile:
            line = line.strip()
            if not line:
                continue
            rows.append(json.loads(line))
    return rows


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=f"%(asctime)s {settings.app_name} %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)
    if args.command == "load":
        with session_factory() as db:
            added = add_credentials(db, read_jsonl(Path(args.input)))
        print(f"loaded={added}")
        return

    runner = BatchRunner(settings, session_factory)

    def _request_stop(signum, frame) -> None:
        # Finish the record in flight, then stop.
        logger.info("interrupt received, stopping after current record")
        runner.request_stop()

    signal.signal(signal.SIGINT, _request_stop)

    result = runner.run(
        options=RunOptions(
            selected_ids=args.ids,
            only_unchecked=args.only_unchecked,
            trigger_source=args.trigger_source,
        )
    )
    counts: dict[str, int] = {}
    for _, outcome in result.outcomes:
        counts[outcome.value] = counts.get(outcome.value, 0) + 1

    print(
        "batch_id={batch_id} status={status} total={total} processed={processed} export={export}".format(
            batch_id=result.batch_run_id,
            status=result.status,
            total=result.total_records,
            processed=result.processed_records,
            export=result.export_path,
        )
    )
    for label, count in sorted(counts.items()):
        print(f"  {label}: {count}")


if __name__ == "__main__":
    main()
