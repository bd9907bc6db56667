"""Command-line interface for batch scanning and CSV export.

Provides subcommands for listing templates, running a folder of
images through the extraction service as one batch, and listing and
confirming externally submitted scans.
"""

import argparse
import csv
import sys
from pathlib import Path

from src.batch.coordinator import BatchResult
from src.batch.intake import Batch, find_documents
from src.errors import PersistenceError, ScanPipelineError
from src.pipeline import PipelineServices, build_services
from src.review.store import DEFAULT_RECENT_LIMIT, ScanRecord
from src.templates.registry import AUTO_DETECT, TemplateRegistry
from src.utils.config import load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

_META_COLUMNS = [
    "filename",
    "status",
    "scan_id",
    "detected_type",
    "confidence_score",
    "validation_errors",
    "saved",
    "error",
]


def run_folder(
    services: PipelineServices,
    input_dir: Path,
    output_csv: Path,
    template_key: str,
    organization_id: str,
    reviewer_id: str | None = None,
    verbose: bool = False,
) -> dict[str, int]:
    """Run every image in a folder as one batch and export results to CSV.

    Args:
        services: Wired pipeline components.
        input_dir: Directory containing document images.
        output_csv: Path for the output CSV file.
        template_key: Concrete template key or ``auto_detect``.
        organization_id: Organization the scans belong to.
        reviewer_id: When given, every completed item is saved as reviewed
            by this reviewer without edits.
        verbose: Whether to print per-item progress.

    Returns:
        Summary dict with total, completed, failed and saved counts.
    """
    files = find_documents(input_dir)
    if not files:
        logger.warning("No documents found in %s", input_dir)
        return {"total": 0, "completed": 0, "failed": 0, "saved": 0}

    batch = services.new_batch(template_key, organization_id)
    _, rejected = batch.add_paths(files)
    for message in rejected:
        print(f"Skipped: {message}", file=sys.stderr)

    if verbose:
        names = {i.id: i.payload.filename for i in batch.items}
        total = len(names)
        batch.tracker.subscribe(
            lambda change: print(
                f"[{change.stats.completed + change.stats.failed}/{total}] "
                f"{names[change.item_id]}: {change.current}"
            )
        )

    result = services.coordinator.run(batch)

    saved: set[str] = set()
    if reviewer_id:
        saved = _save_completed(services, batch, reviewer_id)

    rows = _result_rows(batch, saved)
    _write_csv(rows, output_csv)
    logger.info("Results written to %s", output_csv)

    summary = {
        "total": result.stats.total,
        "completed": result.stats.completed,
        "failed": result.stats.failed,
        "saved": len(saved),
    }
    _print_summary(summary, result, output_csv)
    return summary


def _save_completed(services: PipelineServices, batch: Batch, reviewer_id: str) -> set[str]:
    """Save every completed item, continuing past store errors."""
    saved: set[str] = set()
    for item in batch.items:
        try:
            if services.review.save(item, reviewer_id) is not None:
                saved.add(item.id)
        except PersistenceError as exc:
            logger.error("Failed to save %s: %s", item.payload.filename, exc)
    return saved


def _result_rows(batch: Batch, saved: set[str]) -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for item in batch.items:
        row: dict[str, object] = {
            "filename": item.payload.filename,
            "status": item.status.value,
            "scan_id": item.scan_id,
            "detected_type": item.detected_type,
            "confidence_score": item.confidence_score,
            "validation_errors": "; ".join(
                f"{k}: {v}" for k, v in item.validation_errors.items()
            ),
            "saved": item.id in saved,
            "error": item.error,
        }
        row.update(item.extracted_data or {})
        rows.append(row)
    return rows


def _write_csv(results: list[dict[str, object]], output_path: Path) -> None:
    """Write batch results to a CSV file, metadata columns first.

    Args:
        results: List of result dictionaries.
        output_path: Path for the output CSV file.
    """
    if not results:
        return

    all_keys: set[str] = set()
    for r in results:
        all_keys.update(r.keys())

    field_columns = sorted(all_keys - set(_META_COLUMNS))
    columns = [c for c in _META_COLUMNS if c in all_keys] + field_columns

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(results)


def _print_summary(summary: dict[str, int], result: BatchResult, output_csv: Path) -> None:
    print(f"\n{'=' * 50}")
    print("Batch Processing Complete" if not result.cancelled else "Batch Cancelled")
    print(f"{'=' * 50}")
    print(f"Total:      {summary['total']}")
    print(f"Completed:  {summary['completed']}")
    print(f"Failed:     {summary['failed']}")
    print(f"Saved:      {summary['saved']}")
    if result.active_template is not None:
        print(f"Template:   {result.active_template.key}")
    print(f"Output:     {output_csv}")


def print_templates(registry: TemplateRegistry) -> None:
    """Print the template catalogue grouped by category."""
    print(f"{AUTO_DETECT:<32} Auto-detect document type")
    for category, templates in registry.by_category().items():
        print(f"\n[{category}]")
        for template in templates:
            print(f"{template.key:<32} {template.name} ({len(template.fields)} fields)")


def print_received(records: list[ScanRecord]) -> None:
    """Print recent scans, newest first, one per line."""
    if not records:
        print("No scans found")
        return
    for r in records:
        created = r.created_at.strftime("%Y-%m-%d %H:%M") if r.created_at else "-"
        name = r.original_filename or r.storage_path or "-"
        print(f"{r.id:<38} {r.status:<10} {created:<16} {name}")


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = argparse.ArgumentParser(
        description="Document Scan Batch Processor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", type=Path, help="Configuration YAML file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("templates", help="List available templates")

    batch_parser = subparsers.add_parser("batch", help="Process a folder of images")
    batch_parser.add_argument("input_dir", type=Path, help="Input directory with images")
    batch_parser.add_argument(
        "-t",
        "--template",
        default=AUTO_DETECT,
        help=f"Template key (default: {AUTO_DETECT})",
    )
    batch_parser.add_argument("--org", required=True, help="Organization id")
    batch_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )
    batch_parser.add_argument(
        "--save-as", dest="reviewer", help="Save completed items as reviewed by this user"
    )
    batch_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    confirm_parser = subparsers.add_parser("confirm", help="Confirm an external scan")
    confirm_parser.add_argument("scan_id", help="Scan record id")

    received_parser = subparsers.add_parser("received", help="List recent scans of an organization")
    received_parser.add_argument("--org", required=True, help="Organization id")
    received_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=DEFAULT_RECENT_LIMIT,
        help=f"Number of scans to list (default: {DEFAULT_RECENT_LIMIT})",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level)

    if args.command == "batch" and not args.input_dir.is_dir():
        print(f"Error: {args.input_dir} is not a directory", file=sys.stderr)
        sys.exit(1)

    try:
        services = build_services(config)
    except ScanPipelineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.command == "templates":
            print_templates(services.registry)
        elif args.command == "batch":
            run_folder(
                services,
                args.input_dir,
                args.output,
                args.template,
                args.org,
                args.reviewer,
                args.verbose,
            )
        elif args.command == "confirm":
            changed = services.review.confirm_external(args.scan_id)
            print("Confirmed" if changed else "Already confirmed")
        elif args.command == "received":
            print_received(services.review.received_documents(args.org, args.limit))
    except ScanPipelineError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        services.close()


if __name__ == "__main__":
    main()
