from __future__ import annotations

import argparse
import json
import os
import re
import sys
from typing import Dict, List, Sequence, Union

from ..domain.errors import CardDigitizerError, RemoteReadFailed
from ..logging import get_logger
from ..orchestrator import (
    BatchReconciler,
    ViewMode,
    build_flow_config,
    build_reconciler,
    capture_image,
    ingest_directory,
    log_environment_banner,
)
from ..orchestrator.flow import build_sink
from ..paths import expand_abs

LOG = get_logger("cli-main")


def _add_config_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--store-backend", choices=["json", "sqlite"], help="Record store backend (defaults to env/.env)")
    p.add_argument("--store-path", help="Record store file (default: var/card_db/ at repo root)")
    p.add_argument("--insecure", action="store_true", help="Disable TLS verification for Supabase calls")


def _reconciler(args: argparse.Namespace, *, with_extraction: bool = False) -> BatchReconciler:
    # Read .env and field_schema.json from the current working directory
    config = build_flow_config(args, script_dir=os.getcwd())
    return build_reconciler(config, with_extraction=with_extraction)


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


_INT_RE = re.compile(r"-?(0|[1-9]\d*)")
_FLOAT_RE = re.compile(r"-?(0|[1-9]\d*)\.\d+")


def _coerce_scalar(value: str) -> Union[str, int, float]:
    # Leading zeros (phone numbers, postcodes) stay text.
    if _INT_RE.fullmatch(value):
        return int(value)
    if _FLOAT_RE.fullmatch(value):
        return float(value)
    return value


def _parse_assignments(pairs: Sequence[str]) -> Dict[str, Union[str, int, float]]:
    changes: Dict[str, Union[str, int, float]] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected key=value, got {pair!r}")
        changes[key.strip()] = _coerce_scalar(value)
    return changes


def _handle_ingest(args: argparse.Namespace) -> int:
    if not args.dir and not args.image:
        LOG.error("Nothing to ingest. Provide --dir and/or --image.")
        return 2
    rec = _reconciler(args)
    created: List[str] = []
    if args.dir:
        created.extend(r.id for r in ingest_directory(rec.store, expand_abs(args.dir)))
    for image in args.image or []:
        created.append(capture_image(rec.store, expand_abs(image)).id)
    _print_json({"created": created})
    return 0


def _handle_analyze(args: argparse.Namespace) -> int:
    log_environment_banner()
    rec = _reconciler(args, with_extraction=True)
    if args.id or args.next:
        updated = rec.analyze_record(args.id)
        if updated is None:
            _print_json({"analyzed": None})
            return 0
        _print_json({"analyzed": updated.id, "lifecycle": updated.lifecycle.value, "fields": updated.fields})
        return 0

    def _progress(index: int, total: int, record) -> None:
        print(f"[{index + 1}/{total}] {record.id}", file=sys.stderr)

    rec.on_progress = _progress
    try:
        result = rec.run_batch_extraction()
    except KeyboardInterrupt:
        LOG.info("Interrupted by user. Exiting.")
        return 1
    _print_json(result.summary())
    return 0 if result.ok else 1


def _handle_pending(args: argparse.Namespace) -> int:
    rec = _reconciler(args)
    records = rec.views.select(ViewMode(args.view))
    _print_json([{"id": r.id, "lifecycle": r.lifecycle.value, "fields": r.fields} for r in records])
    return 0


def _handle_edit(args: argparse.Namespace) -> int:
    try:
        changes = _parse_assignments(args.set)
    except ValueError as exc:
        LOG.error(str(exc))
        return 2
    rec = _reconciler(args)
    try:
        updated = rec.edit_record(args.id, changes)
    except ValueError as exc:
        LOG.error(str(exc))
        return 2
    _print_json({"id": updated.id, "fields": updated.fields})
    return 0


def _handle_save(args: argparse.Namespace) -> int:
    rec = _reconciler(args)
    if args.all:
        results = rec.save_all_pending()
        _print_json(
            [
                {"id": r.record_id, "saved": r.saved, "remoteId": r.remote_id, "error": str(r.error) if r.error else None}
                for r in results
            ]
        )
        return 0 if all(r.error is None for r in results) else 1
    result = rec.save_record_to_remote(args.id)
    _print_json({"id": result.record_id, "saved": result.saved, "already_saved": result.already_saved, "remoteId": result.remote_id})
    return 0


def _handle_delete(args: argparse.Namespace) -> int:
    rec = _reconciler(args)
    removed = rec.delete_records(args.id, remote=args.remote)
    _print_json({"removed": removed})
    return 0


def _handle_remote_list(args: argparse.Namespace) -> int:
    config = build_flow_config(args, script_dir=os.getcwd())
    sink = build_sink(config)
    if sink is None:
        raise RemoteReadFailed("no remote table configured")
    _print_json(sink.list_rows(date_from=args.date_from, date_to=args.date_to))
    return 0


def _handle_remote_edit(args: argparse.Namespace) -> int:
    try:
        changes = _parse_assignments(args.set)
    except ValueError as exc:
        LOG.error(str(exc))
        return 2
    rec = _reconciler(args)
    try:
        out = rec.update_remote_row(args.remote_id, changes)
    except ValueError as exc:
        LOG.error(str(exc))
        return 2
    _print_json(out)
    return 0


def _handle_remote_delete(args: argparse.Namespace) -> int:
    rec = _reconciler(args)
    try:
        deleted = rec.delete_remote_rows(args.remote_id, date_from=args.date_from, date_to=args.date_to)
    except ValueError as exc:
        LOG.error(str(exc))
        return 2
    _print_json({"deleted": deleted})
    return 0


def _handle_serve(args: argparse.Namespace) -> int:
    from ..review import create_app
    import uvicorn

    log_environment_banner()
    rec = _reconciler(args, with_extraction=not args.no_extraction)
    allow_origins = args.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]
    app = create_app(rec, allow_origins=allow_origins)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="card-digitizer",
        description="Capture card images, extract their fields with a vision model, review and save them.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Add images as new unanalyzed records.")
    _add_config_args(ingest)
    ingest.add_argument("--dir", help="Directory of card images; already captured files are skipped")
    ingest.add_argument("--image", action="append", help="Single image path (repeatable)")
    ingest.set_defaults(handler=_handle_ingest)

    analyze = subparsers.add_parser("analyze", help="Run batch extraction over every unanalyzed record.")
    _add_config_args(analyze)
    analyze.add_argument("--backend", choices=["openrouter", "ollama", "openai"], help="Override EXTRACTION_BACKEND")
    analyze.add_argument("--model", help="Override the model of the selected backend")
    analyze.add_argument("--timeout", type=int, help="Per-request extraction timeout in seconds")
    single = analyze.add_mutually_exclusive_group()
    single.add_argument("--id", help="Analyze only this unanalyzed record")
    single.add_argument("--next", action="store_true", help="Analyze only the next unanalyzed record")
    analyze.set_defaults(handler=_handle_analyze)

    pending = subparsers.add_parser("pending", help="List records awaiting analysis or save.")
    _add_config_args(pending)
    pending.add_argument(
        "--view",
        choices=[m.value for m in ViewMode],
        default=ViewMode.PENDING_SAVE.value,
    )
    pending.set_defaults(handler=_handle_pending)

    edit = subparsers.add_parser("edit", help="Correct fields of an analyzed record.")
    _add_config_args(edit)
    edit.add_argument("--id", required=True)
    edit.add_argument(
        "--set",
        action="append",
        required=True,
        metavar="KEY=VALUE",
        help="Field assignment (repeatable); plain numbers such as 120 or 4.5 are stored as numbers",
    )
    edit.set_defaults(handler=_handle_edit)

    save = subparsers.add_parser("save", help="Insert analyzed records into the remote table.")
    _add_config_args(save)
    target = save.add_mutually_exclusive_group(required=True)
    target.add_argument("--id")
    target.add_argument("--all", action="store_true")
    save.set_defaults(handler=_handle_save)

    delete = subparsers.add_parser("delete", help="Remove records from the local store.")
    _add_config_args(delete)
    delete.add_argument("--id", action="append", required=True)
    delete.add_argument("--remote", action="store_true", help="Also delete the remote rows of saved records")
    delete.set_defaults(handler=_handle_delete)

    remote_list = subparsers.add_parser("remote-list", help="List rows of the remote table, newest first.")
    _add_config_args(remote_list)
    remote_list.add_argument("--from", dest="date_from", help="Lower bound (inclusive) on the date column")
    remote_list.add_argument("--to", dest="date_to", help="Upper bound (inclusive) on the date column")
    remote_list.set_defaults(handler=_handle_remote_list)

    remote_edit = subparsers.add_parser("remote-edit", help="Update fields of one remote row by its row id.")
    _add_config_args(remote_edit)
    remote_edit.add_argument("--remote-id", required=True)
    remote_edit.add_argument(
        "--set",
        action="append",
        required=True,
        metavar="KEY=VALUE",
        help="Field assignment by local field key (repeatable); plain numbers are stored as numbers",
    )
    remote_edit.set_defaults(handler=_handle_remote_edit)

    remote_delete = subparsers.add_parser(
        "remote-delete", help="Delete remote rows by row id, or every row inside a date range."
    )
    _add_config_args(remote_delete)
    remote_delete.add_argument("--remote-id", action="append", help="Row id to delete (repeatable)")
    remote_delete.add_argument("--from", dest="date_from", help="Lower bound (inclusive) on the date column")
    remote_delete.add_argument("--to", dest="date_to", help="Upper bound (inclusive) on the date column")
    remote_delete.set_defaults(handler=_handle_remote_delete)

    serve = subparsers.add_parser("serve", help="Run the JSON review API.")
    _add_config_args(serve)
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8001)
    serve.add_argument("--log-level", default="info")
    serve.add_argument("--no-extraction", action="store_true", help="Serve review routes only; batch runs are refused")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"CLI invoked with arguments: {provided}")

    parser = build_parser()
    args = parser.parse_args(provided)
    try:
        code = args.handler(args)
    except CardDigitizerError as exc:
        LOG.error(f"{type(exc).__name__}: {exc}")
        code = 1
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
