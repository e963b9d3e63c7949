import asyncio
import json
import logging
import os
import re
from typing import Any, Callable, TypeVar

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from docgen_service.config import Settings, configure_logging, load_settings
from docgen_service.generation import (
    DocxTemplateRenderer,
    GenerationService,
    TemplateResolver,
    UploadedTemplate,
    extract_generate_payload,
)
from docgen_service.generation.adapters import DoclingConverter, HttpTemplateFetcher, LibreOfficeConverter
from docgen_service.generation.errors import (
    ClientInputError,
    DocGenError,
    InternalServiceError,
    InvalidDataFormatError,
    PayloadTooLargeError,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Document Generation Service",
    version=os.getenv("DOCGEN_SERVICE_VERSION", "0.1.0"),
    description=(
        "RESTful API that fills .docx templates with JSON data and converts "
        "documents to other formats such as PDF."
    ),
)

SETTINGS: Settings | None = None
SERVICE: GenerationService | None = None

CHUNK = 1024 * 1024
NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")
HTTP_ERROR_CODES = {
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
    415: "unsupported_media_type",
}

T = TypeVar("T")


def build_service(settings: Settings) -> GenerationService:
    fetcher = HttpTemplateFetcher(timeout=settings.fetch_timeout_sec, max_bytes=settings.max_upload_bytes)
    resolver = TemplateResolver(fetcher, settings.default_template)
    renderer = DocxTemplateRenderer(missing_fields=settings.missing_fields, linebreaks=settings.linebreaks)
    office = LibreOfficeConverter(
        binary=settings.soffice_binary,
        timeout=settings.conversion_timeout_sec,
        work_dir=settings.work_dir,
    )
    docling = DoclingConverter(timeout=settings.conversion_timeout_sec, work_dir=settings.work_dir)
    converters = {target: office for target in LibreOfficeConverter.TARGETS}
    converters.update({target: docling for target in DoclingConverter.TARGETS})
    return GenerationService(
        resolver,
        renderer,
        converters,
        output_name=settings.output_name,
        default_target=settings.convert_target,
    )


def get_settings() -> Settings:
    global SETTINGS
    if SETTINGS is None:
        SETTINGS = load_settings()
    return SETTINGS


def get_service() -> GenerationService:
    global SERVICE
    if SERVICE is None:
        SERVICE = build_service(get_settings())
    return SERVICE


@app.on_event("startup")
async def _startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    get_service()
    if settings.default_template.path:
        logger.info("default template: %s", settings.default_template.path)
    else:
        logger.warning(
            "no default template found; searched: %s", ", ".join(settings.default_template.searched)
        )


@app.on_event("shutdown")
async def _shutdown() -> None:
    global SERVICE
    if SERVICE is not None:
        SERVICE.close()
        SERVICE = None


def _error_response(request: Request, status_code: int, message: str, code: str) -> JSONResponse:
    if status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, message, code)
    else:
        logger.warning("%s %s rejected: %s (%s)", request.method, request.url.path, message, code)
    return JSONResponse(status_code=status_code, content={"error": message, "code": code})


@app.exception_handler(DocGenError)
async def _docgen_error(request: Request, exc: DocGenError) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.message, exc.code)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        where = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        msg = err.get("msg", "invalid value")
        problems.append(f"{where}: {msg}" if where else msg)
    return _error_response(request, 400, "Invalid request: " + "; ".join(problems), ClientInputError.code)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
    response = _error_response(request, exc.status_code, str(exc.detail), code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def _run_stage(fn: Callable[..., T], *args: Any) -> T:
    """Run a blocking pipeline stage in a worker thread."""
    try:
        return await asyncio.to_thread(fn, *args)
    except DocGenError:
        raise
    except Exception as e:
        logger.exception("unexpected pipeline failure")
        raise InternalServiceError() from e


async def _read_upload(file: StarletteUploadFile, max_bytes: int) -> bytes:
    """Read a staged upload into memory and always release its spool file."""
    try:
        body = bytearray()
        while True:
            chunk = await file.read(CHUNK)
            if not chunk:
                break
            body.extend(chunk)
            if len(body) > max_bytes:
                raise PayloadTooLargeError(f"upload exceeds {max_bytes // CHUNK} MB")
        return bytes(body)
    finally:
        await file.close()


def _attachment_headers(filename: str, template_label: str | None = None) -> dict[str, str]:
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    if template_label is not None:
        headers["X-Template-Source"] = NON_PRINTABLE.sub("", template_label).strip()
    return headers


async def _generate_fields(request: Request) -> tuple[dict[str, Any], StarletteUploadFile | None]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        fields: dict[str, Any] = {k: v for k, v in form.items() if isinstance(v, str)}
        template = form.get("template")
        # browsers send an empty part when no file was picked
        if isinstance(template, StarletteUploadFile) and template.filename:
            return fields, template
        if isinstance(template, StarletteUploadFile):
            await template.close()
        return fields, None

    raw = await request.body()
    if not raw.strip():
        return {}, None
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidDataFormatError("Request body is not valid JSON") from e
    if not isinstance(body, dict):
        raise InvalidDataFormatError("Request body must be a JSON object")
    return body, None


@app.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@app.post("/generate-docx")
async def generate_docx(
    request: Request,
    service: GenerationService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Fill a .docx template with JSON data.

    Accepts either multipart/form-data (``data`` or ``jsonPayload``,
    optional ``template`` file, ``templateUrl`` and ``format``) or a JSON body
    with the same keys. The template is the uploaded file if any, else
    ``templateUrl``, else the default template.
    """
    fields, template_file = await _generate_fields(request)
    try:
        payload = extract_generate_payload(fields)
        upload = None
        if template_file is not None:
            content = await _read_upload(template_file, settings.max_upload_bytes)
            upload = UploadedTemplate(content=content, filename=template_file.filename or "template.docx")
    finally:
        if template_file is not None:
            await template_file.close()

    result = await _run_stage(service.generate, payload, upload)
    artifact = result.artifact
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers=_attachment_headers(artifact.filename, result.template_label),
    )


@app.post("/upload")
async def convert_upload(
    file: UploadFile | None = File(None),
    target: str | None = Form(None),
    service: GenerationService = Depends(get_service),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Convert an uploaded document (``file``) to ``target`` (default PDF)."""
    content = None
    filename = None
    if file is not None:
        filename = file.filename
        content = await _read_upload(file, settings.max_upload_bytes)

    artifact = await _run_stage(service.convert_upload, content, filename, target)
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers=_attachment_headers(artifact.filename),
    )


def run() -> None:
    """Run a development ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:3000). Set PORT env var to override.
    """
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run("docgen_service.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


if __name__ == "__main__":
    run()
