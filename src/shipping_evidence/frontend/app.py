from __future__ import annotations

import mimetypes
import re
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from ..domain.models import MAX_ATTACHMENTS, MediaAttachment, NewShippingRecord, SearchFilter, ShippingRecord
from ..export import export_filename
from ..logging import get_logger
from ..service import RecordService
from ..store import ConstraintViolation, InvalidRecord, RecordNotFound
from ..sync import SyncError


LOG = get_logger("api")

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
EDITABLE_FIELDS = ("ship_date", "tracking_number", "note")


def _parse_date(value: Optional[str], field: str, *, required: bool = False) -> Optional[str]:
    value = (value or "").strip()
    if not value:
        if required:
            raise HTTPException(status_code=400, detail=f"{field} is required")
        return None
    if not _DATE_RE.fullmatch(value):
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")
    try:
        date.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"{field} is not a valid date") from exc
    return value


def _record_payload(record: ShippingRecord) -> Dict[str, Any]:
    payload = record.as_dict()
    payload["image_url"] = record.image_url
    return payload


async def _read_upload(upload: UploadFile) -> MediaAttachment:
    data = await upload.read()
    filename = upload.filename or "photo"
    mime = upload.content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return MediaAttachment(filename=filename, mime_type=mime, payload=data)


def create_app(
    root_dir: Optional[str] = None,
    *,
    service: Optional[RecordService] = None,
    allow_origins: Optional[List[str]] = None,
    cloud_first: bool = False,
) -> Starlette:
    """Create a Starlette app exposing the shipping record API.

    `service` is injected in tests; otherwise it is built from the environment
    and closed on shutdown.
    """

    owns_service = service is None
    svc = service or RecordService.from_environment(root_dir or ".", migrate=False)
    try:
        svc.store.migrate()
    except ConstraintViolation as exc:
        # keep serving so POST /api/reset can rebuild the file; record routes answer 409
        LOG.error(f"{exc}. POST /api/reset?confirm=true rebuilds the local database.")

    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "ok",
                "db_path": svc.store.db_path,
                "schema_version": svc.store.schema_version,
                "cloud_sync": svc.coordinator.storage.is_configured,
                "ocr_strategy": svc.engine.strategy.name,
            }
        )

    async def list_records(request: Request) -> JSONResponse:
        qp = request.query_params
        preset = qp.get("preset")
        if preset:
            criteria = SearchFilter.for_preset(preset)
        else:
            criteria = SearchFilter(
                date_from=_parse_date(qp.get("date_from") or qp.get("from"), "date_from"),
                date_to=_parse_date(qp.get("date_to") or qp.get("to"), "date_to"),
            )
        criteria.tracking_number_query = (qp.get("q") or qp.get("tracking_number") or "").strip() or None
        records = svc.search_records(criteria)
        return JSONResponse({"items": [_record_payload(r) for r in records], "count": len(records)})

    async def create_record(request: Request) -> JSONResponse:
        form = await request.form()
        ship_date = _parse_date(form.get("ship_date"), "ship_date", required=True)
        tracking_number = (form.get("tracking_number") or "").strip()
        if not tracking_number:
            raise HTTPException(status_code=400, detail="tracking_number is required")
        uploads = [f for f in form.getlist("images") if isinstance(f, UploadFile)]
        if not uploads:
            raise HTTPException(status_code=400, detail="at least one image is required")
        if len(uploads) > MAX_ATTACHMENTS:
            raise HTTPException(status_code=400, detail=f"at most {MAX_ATTACHMENTS} images are allowed")
        media = [await _read_upload(u) for u in uploads]
        new_record = NewShippingRecord(
            ship_date=ship_date,
            tracking_number=tracking_number,
            note=str(form.get("note") or ""),
            media=media,
        )
        try:
            record_id = await run_in_threadpool(svc.create_record, new_record, cloud_first=cloud_first)
        except SyncError as exc:
            raise HTTPException(status_code=502, detail=f"Upload failed, please retry: {exc}") from exc
        LOG.info(f"API created record id={record_id}")
        return JSONResponse(_record_payload(svc.get_record(record_id)), status_code=201)

    async def record_detail(request: Request) -> JSONResponse:
        record_id = int(request.path_params["record_id"])
        return JSONResponse(_record_payload(svc.get_record(record_id)))

    async def update_record(request: Request) -> JSONResponse:
        record_id = int(request.path_params["record_id"])
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Body must be JSON") from exc
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")
        unknown = sorted(set(body) - set(EDITABLE_FIELDS))
        if unknown:
            raise HTTPException(status_code=400, detail=f"Fields cannot be edited: {', '.join(unknown)}")
        fields: Dict[str, Any] = dict(body)
        if "ship_date" in fields:
            fields["ship_date"] = _parse_date(fields["ship_date"], "ship_date", required=True)
        record = svc.update_record(record_id, **fields)
        return JSONResponse(_record_payload(record))

    async def delete_record(request: Request) -> JSONResponse:
        record_id = int(request.path_params["record_id"])
        await run_in_threadpool(svc.delete_record, record_id)
        return JSONResponse({"deleted": record_id})

    async def record_media(request: Request) -> Response:
        record_id = int(request.path_params["record_id"])
        position = int(request.path_params["position"])
        record = svc.get_record(record_id)
        if position < 0 or position >= len(record.media):
            raise HTTPException(status_code=404, detail="Photo not found")
        media = record.media[position]
        if media.payload:
            return Response(media.payload, media_type=media.mime_type or "application/octet-stream")
        if media.remote_url:
            return RedirectResponse(media.remote_url, status_code=307)
        raise HTTPException(status_code=404, detail="Photo has no data")

    async def sync_record(request: Request) -> JSONResponse:
        record_id = int(request.path_params["record_id"])
        outcome = await run_in_threadpool(svc.retry_sync, record_id)
        return JSONResponse(
            {
                "record_id": outcome.record_id,
                "status": outcome.status.value if outcome.status else None,
                "skipped": outcome.skipped,
                "error": outcome.error,
                "uploaded": outcome.uploaded,
                "record": _record_payload(svc.get_record(record_id)),
            }
        )

    async def ocr(request: Request) -> JSONResponse:
        form = await request.form()
        upload = form.get("image")
        if not isinstance(upload, UploadFile):
            return JSONResponse(
                {"success": False, "trackingNumberCandidate": None, "error": "No image file provided"},
                status_code=400,
            )
        attachment = await _read_upload(upload)
        result = await run_in_threadpool(
            svc.extract, attachment.payload, mime_type=attachment.mime_type, filename=attachment.filename
        )
        # failures are never surfaced here; the client falls back to manual entry
        return JSONResponse(result.as_dict())

    def _attachment(content: str, media_type: str, fmt: str) -> Response:
        filename = export_filename(fmt)
        return Response(
            content.encode("utf-8"),
            media_type=media_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    async def export_json(_: Request) -> Response:
        return _attachment(svc.exporter.to_json(), "application/json", "json")

    async def export_csv(_: Request) -> Response:
        return _attachment(svc.exporter.to_csv(), "text/csv; charset=utf-8", "csv")

    async def reset(request: Request) -> JSONResponse:
        if (request.query_params.get("confirm") or "").lower() not in {"1", "true", "yes"}:
            raise HTTPException(status_code=400, detail="Pass confirm=true to delete all local records")
        svc.reset_database()
        return JSONResponse({"status": "reset", "schema_version": svc.store.schema_version})

    async def not_found(_: Request, exc: RecordNotFound) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=404)

    async def invalid(_: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=400)

    async def constraint(_: Request, exc: ConstraintViolation) -> JSONResponse:
        return JSONResponse(
            {"detail": str(exc), "recovery": "POST /api/reset?confirm=true rebuilds the local database"},
            status_code=409,
        )

    routes = [
        Route("/api/health", health, methods=["GET"]),
        Route("/api/records", list_records, methods=["GET"]),
        Route("/api/records", create_record, methods=["POST"]),
        Route("/api/records/{record_id:int}", record_detail, methods=["GET"]),
        Route("/api/records/{record_id:int}", update_record, methods=["PATCH"]),
        Route("/api/records/{record_id:int}", delete_record, methods=["DELETE"]),
        Route("/api/records/{record_id:int}/media/{position:int}", record_media, methods=["GET"]),
        Route("/api/records/{record_id:int}/sync", sync_record, methods=["POST"]),
        Route("/api/ocr", ocr, methods=["POST"]),
        Route("/api/export.json", export_json, methods=["GET"]),
        Route("/api/export.csv", export_csv, methods=["GET"]),
        Route("/api/reset", reset, methods=["POST"]),
    ]

    exception_handlers = {
        RecordNotFound: not_found,
        InvalidRecord: invalid,
        ValueError: invalid,
        ConstraintViolation: constraint,
    }

    @asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        yield
        if owns_service:
            svc.close()

    app = Starlette(debug=False, routes=routes, exception_handlers=exception_handlers, lifespan=lifespan)

    origins = allow_origins or ["http://localhost:3000", "http://127.0.0.1:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if "*" in origins else origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = svc
    return app


__all__ = ["create_app"]
