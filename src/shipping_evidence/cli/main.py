from __future__ import annotations

import argparse
import json
import mimetypes
import os
import sys
from datetime import date
from typing import List, Sequence

from ..domain.models import DATE_PRESETS, MediaAttachment, NewShippingRecord, SearchFilter, ShippingRecord
from ..logging import get_logger
from ..ocr import OcrProgress
from ..paths import expand_abs
from ..service import RecordService
from ..store import ConstraintViolation, StoreError
from ..sync import SyncError

LOG = get_logger("cli-main")


def _load_attachment(path: str) -> MediaAttachment:
    full = expand_abs(path)
    with open(full, "rb") as fh:
        data = fh.read()
    mime, _ = mimetypes.guess_type(full)
    return MediaAttachment(filename=os.path.basename(full), mime_type=mime or "application/octet-stream", payload=data)


def _print_records(records: Sequence[ShippingRecord], as_json: bool) -> None:
    if as_json:
        print(json.dumps([r.as_dict() for r in records], ensure_ascii=False, indent=2))
        return
    for r in records:
        note = (r.note or "").replace("\n", " ")
        print(f"{r.id:>5}  {r.ship_date}  {r.tracking_number:<16} {r.sync_status.value:<9} {note}")
    print(f"{len(records)} record(s)")


def _service(ns: argparse.Namespace, *, migrate: bool = True) -> RecordService:
    return RecordService.from_environment(os.getcwd(), db_path=ns.db, migrate=migrate)


def _handle_add(ns: argparse.Namespace) -> int:
    media = [_load_attachment(p) for p in ns.image]
    with _service(ns) as svc:
        tracking = ns.tracking_number
        if not tracking:
            result = svc.extract(media[0].payload, mime_type=media[0].mime_type, filename=media[0].filename)
            tracking = result.tracking_number_candidate
            if not tracking:
                LOG.error("No tracking number given and none recognized; pass --tracking-number")
                return 2
            LOG.info(f"Using recognized tracking number {tracking}")
        new_record = NewShippingRecord(
            ship_date=ns.ship_date or date.today().isoformat(),
            tracking_number=tracking,
            note=ns.note or "",
            media=media,
        )
        try:
            # The CLI exits right away, so upload inline instead of in the background.
            record_id = svc.create_record(new_record, cloud_first=ns.cloud_first, wait=True)
        except SyncError as e:
            LOG.error(f"Upload failed, nothing saved: {e}")
            return 1
        print(json.dumps(svc.get_record(record_id).as_dict(), ensure_ascii=False, indent=2))
    return 0


def _handle_list(ns: argparse.Namespace) -> int:
    with _service(ns) as svc:
        _print_records(svc.list_records(), ns.json)
    return 0


def _handle_search(ns: argparse.Namespace) -> int:
    if ns.preset:
        criteria = SearchFilter.for_preset(ns.preset)
    else:
        criteria = SearchFilter(date_from=ns.date_from, date_to=ns.date_to)
    criteria.tracking_number_query = ns.query
    with _service(ns) as svc:
        _print_records(svc.search_records(criteria), ns.json)
    return 0


def _handle_show(ns: argparse.Namespace) -> int:
    with _service(ns) as svc:
        print(json.dumps(svc.get_record(ns.id).as_dict(), ensure_ascii=False, indent=2))
    return 0


def _handle_edit(ns: argparse.Namespace) -> int:
    fields = {k: v for k, v in (("ship_date", ns.ship_date), ("tracking_number", ns.tracking_number), ("note", ns.note)) if v is not None}
    if not fields:
        LOG.error("Nothing to change; pass --ship-date, --tracking-number or --note")
        return 2
    with _service(ns) as svc:
        record = svc.update_record(ns.id, **fields)
        print(json.dumps(record.as_dict(), ensure_ascii=False, indent=2))
    return 0


def _handle_delete(ns: argparse.Namespace) -> int:
    with _service(ns) as svc:
        svc.delete_record(ns.id)
    LOG.info(f"Deleted record {ns.id}")
    return 0


def _handle_sync(ns: argparse.Namespace) -> int:
    with _service(ns) as svc:
        if ns.all:
            ids = [r.id for r in svc.list_records() if r.sync_status.value != "synced"]
        else:
            ids = list(ns.ids)
        failed = 0
        for record_id in ids:
            outcome = svc.retry_sync(record_id)
            status = outcome.status.value if outcome.status else "skipped"
            print(f"{record_id}: {status}{' - ' + outcome.error if outcome.error else ''}")
            if outcome.status is not None and not outcome.ok:
                failed += 1
    return 1 if failed else 0


def _handle_ocr(ns: argparse.Namespace) -> int:
    attachment = _load_attachment(ns.image)

    def _progress(p: OcrProgress) -> None:
        LOG.info(f"OCR {p.status}: {p.progress:.0%}")

    with _service(ns) as svc:
        result = svc.extract(
            attachment.payload, mime_type=attachment.mime_type, filename=attachment.filename, on_progress=_progress
        )
    print(json.dumps(result.as_dict(), ensure_ascii=False, indent=2))
    return 0 if result.found else 1


def _handle_export(ns: argparse.Namespace) -> int:
    with _service(ns) as svc:
        path = svc.exporter.write(ns.output, fmt=ns.format, directory=ns.directory)
    print(path)
    return 0


def _handle_reset(ns: argparse.Namespace) -> int:
    if not ns.yes:
        LOG.error("reset-db deletes every local record; re-run with --yes to confirm")
        return 2
    # no migration on open: this is the recovery path for a DB that cannot migrate
    with _service(ns, migrate=False) as svc:
        svc.reset_database()
        LOG.info(f"Local database rebuilt at {svc.store.db_path}")
    return 0


def _handle_serve(ns: argparse.Namespace) -> int:
    from ..frontend import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    if allow_origins and len(allow_origins) == 1 and allow_origins[0] == "*":
        allow_origins = ["*"]

    app = create_app(root_dir=os.getcwd(), allow_origins=allow_origins, cloud_first=ns.cloud_first)
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shipping-evidence",
        description="Record shipment slips (photo + tracking number) locally and back them up to the cloud.",
    )
    parser.add_argument("--db", help="SQLite file to use (default: SHIPPING_DB_PATH or var/shipping_evidence/)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add = subparsers.add_parser("add", help="Save a new record from 1-3 photos.")
    add.add_argument("--image", action="append", required=True, help="Photo path (repeat up to 3 times)")
    add.add_argument("--tracking-number", help="Tracking number; recognized from the first photo when omitted")
    add.add_argument("--ship-date", help="YYYY-MM-DD (default: today)")
    add.add_argument("--note", default="")
    add.add_argument("--cloud-first", action="store_true", help="Upload before saving; nothing is saved on failure")
    add.set_defaults(handler=_handle_add)

    lst = subparsers.add_parser("list", help="List all records, newest ship date first.")
    lst.add_argument("--json", action="store_true")
    lst.set_defaults(handler=_handle_list)

    search = subparsers.add_parser("search", help="Filter by tracking number and/or ship date.")
    search.add_argument("query", nargs="?", help="Tracking number or part of it (hyphens optional)")
    search.add_argument("--from", dest="date_from", help="YYYY-MM-DD (inclusive)")
    search.add_argument("--to", dest="date_to", help="YYYY-MM-DD (inclusive)")
    search.add_argument("--preset", choices=[p.lower() for p in DATE_PRESETS if p != "CUSTOM"])
    search.add_argument("--json", action="store_true")
    search.set_defaults(handler=_handle_search)

    show = subparsers.add_parser("show", help="Print one record as JSON.")
    show.add_argument("id", type=int)
    show.set_defaults(handler=_handle_show)

    edit = subparsers.add_parser("edit", help="Change ship date, tracking number or note.")
    edit.add_argument("id", type=int)
    edit.add_argument("--ship-date")
    edit.add_argument("--tracking-number")
    edit.add_argument("--note")
    edit.set_defaults(handler=_handle_edit)

    delete = subparsers.add_parser("delete", help="Delete a record and its cloud copies.")
    delete.add_argument("id", type=int)
    delete.set_defaults(handler=_handle_delete)

    sync = subparsers.add_parser("sync", help="Upload (or retry) the photos of records.")
    sync.add_argument("ids", nargs="*", type=int)
    sync.add_argument("--all", action="store_true", help="Every record that is not synced yet")
    sync.set_defaults(handler=_handle_sync)

    ocr = subparsers.add_parser("ocr", help="Recognize the tracking number on a photo.")
    ocr.add_argument("image")
    ocr.set_defaults(handler=_handle_ocr)

    export = subparsers.add_parser("export", help="Write a JSON or CSV backup of all records.")
    export.add_argument("--format", choices=["json", "csv"], default="json")
    export.add_argument("--output", help="Target file (default: shipping-records_<timestamp>.<format>)")
    export.add_argument("--directory", help="Folder for the default file name")
    export.set_defaults(handler=_handle_export)

    reset = subparsers.add_parser("reset-db", help="Delete ALL local records and rebuild the database.")
    reset.add_argument("--yes", action="store_true")
    reset.set_defaults(handler=_handle_reset)

    serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8002)
    serve.add_argument("--log-level", default="info")
    serve.add_argument("--cloud-first", action="store_true")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_handle_serve)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    provided: List[str] = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")
    args = build_parser().parse_args(provided)
    try:
        code = args.handler(args)
    except ConstraintViolation as e:
        LOG.error(f"{e}. Run 'shipping-evidence reset-db --yes' to rebuild the local database.")
        code = 3
    except (StoreError, ValueError, OSError) as e:
        LOG.error(str(e))
        code = 1
    LOG.debug(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
