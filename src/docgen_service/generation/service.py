import json
import logging
from pathlib import Path
from typing import Any, Mapping

from .errors import (
    ConversionFailedError,
    InvalidDataFormatError,
    MissingDataError,
    NoFileUploadedError,
    TemplateEmptyError,
    TemplateNotFoundError,
    UnsupportedFormatError,
)
from .interfaces import (
    ConversionJob,
    ConverterGateway,
    DefaultTemplate,
    DocumentRenderer,
    GeneratePayload,
    GenerationResult,
    RemoteTemplate,
    RenderedArtifact,
    ResolvedTemplate,
    TemplateFetcher,
    TemplateSource,
    UploadedTemplate,
    media_type_for,
)

logger = logging.getLogger(__name__)

DATA_FIELDS = ("data", "jsonPayload")


def choose_template_source(
    upload: UploadedTemplate | None,
    template_url: str | None,
    default: DefaultTemplate,
) -> TemplateSource:
    """Pick the template source: uploaded file, then URL, then the default."""
    if upload is not None:
        return upload
    if template_url and template_url.strip():
        return RemoteTemplate(template_url.strip())
    return default


def _parse_json_value(raw: Any, what: str) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidDataFormatError(f"Invalid JSON in '{what}': {exc.msg} (line {exc.lineno}, column {exc.colno})") from exc


def _is_wrapped(value: Any) -> bool:
    return isinstance(value, dict) and "data" in value and "templateUrl" in value


def extract_generate_payload(fields: Mapping[str, Any]) -> GeneratePayload:
    """Validate and normalize the body of a generate request.

    ``fields`` holds the form fields or the decoded JSON body. The data
    may arrive under ``data`` or the legacy ``jsonPayload`` key, either as a
    JSON string or as an already decoded object. Some callers wrap the whole
    request in ``data`` (``{"data": {"templateUrl": ..., "data": {...}}}``);
    exactly one such level is unwrapped and anything deeper is rejected.
    """
    key = next((k for k in DATA_FIELDS if fields.get(k) not in (None, "")), None)
    if key is None:
        raise MissingDataError()
    data = _parse_json_value(fields[key], key)

    template_url = fields.get("templateUrl")
    if template_url is not None and not isinstance(template_url, str):
        raise InvalidDataFormatError("'templateUrl' must be a string")

    if _is_wrapped(data):
        logger.warning("unwrapping double-wrapped generate payload")
        inner_url = data.get("templateUrl")
        if not template_url and isinstance(inner_url, str):
            template_url = inner_url
        data = _parse_json_value(data.get("data"), "data.data")
        if _is_wrapped(data):
            raise InvalidDataFormatError("Payload is nested more than one level deep")
        if data is None:
            raise MissingDataError()

    if not isinstance(data, dict):
        raise InvalidDataFormatError("'data' must be a JSON object")

    output_format = fields.get("format") or "docx"
    if not isinstance(output_format, str):
        raise InvalidDataFormatError("'format' must be a string")

    return GeneratePayload(
        context=data,
        template_url=template_url.strip() if template_url else None,
        output_format=output_format.strip().lower().lstrip("."),
    )


class TemplateResolver:
    """Turn a TemplateSource into template bytes."""

    def __init__(self, fetcher: TemplateFetcher, default: DefaultTemplate) -> None:
        self._fetcher = fetcher
        self.default = default

    def resolve(self, source: TemplateSource) -> ResolvedTemplate:
        if isinstance(source, UploadedTemplate):
            label = f"Uploaded: {source.filename}"
            content = source.content
            client_supplied = True
        elif isinstance(source, RemoteTemplate):
            label = f"From URL: {source.url}"
            content = self._fetcher.fetch(source.url)
            client_supplied = True
        else:
            label = "Default template"
            content = self._read_default(source)
            client_supplied = False

        if not content:
            raise TemplateEmptyError(
                f"Template is empty ({label})",
                status_code=400 if client_supplied else 500,
            )
        logger.info("using template source %r (%d bytes)", label, len(content))
        return ResolvedTemplate(content=content, source=source, label=label)

    @staticmethod
    def _read_default(source: DefaultTemplate) -> bytes:
        if source.path is None:
            raise TemplateNotFoundError(list(source.searched))
        try:
            return Path(source.path).read_bytes()
        except FileNotFoundError as exc:
            raise TemplateNotFoundError([source.path]) from exc


class GenerationService:
    """Core pipeline: resolve the template, render it, optionally convert.

    Framework-agnostic; the HTTP layer parses requests into payloads and maps
    DocGenError subclasses onto responses.
    """

    def __init__(
        self,
        resolver: TemplateResolver,
        renderer: DocumentRenderer,
        converters: Mapping[str, ConverterGateway],
        *,
        output_name: str = "course-spec",
        default_target: str = "pdf",
    ) -> None:
        self._resolver = resolver
        self._renderer = renderer
        self._converters = dict(converters)
        self._output_name = output_name
        self._default_target = default_target

    @property
    def targets(self) -> list[str]:
        return sorted(self._converters)

    def close(self) -> None:
        """Release converter resources such as worker pools."""
        for converter in {id(c): c for c in self._converters.values()}.values():
            close = getattr(converter, "close", None)
            if callable(close):
                close()

    def generate(self, payload: GeneratePayload, upload: UploadedTemplate | None = None) -> GenerationResult:
        if payload.output_format != "docx" and payload.output_format not in self._converters:
            raise UnsupportedFormatError(f"Unsupported output format '{payload.output_format}'")

        source = choose_template_source(upload, payload.template_url, self._resolver.default)
        template = self._resolver.resolve(source)
        artifact = self._renderer.render(
            template.content, payload.context, filename=f"{self._output_name}.docx"
        )
        if payload.output_format != "docx":
            artifact = self.convert(ConversionJob(source=artifact, target=payload.output_format))
        return GenerationResult(artifact=artifact, template_label=template.label)

    def convert(self, job: ConversionJob) -> RenderedArtifact:
        target = job.target.lower().lstrip(".")
        converter = self._converters.get(target)
        if converter is None:
            raise UnsupportedFormatError(
                f"Unsupported target format '{job.target}'; expected one of: {', '.join(self.targets)}"
            )
        content = converter.convert(job.source.content, target, filename=job.source.filename)
        if not content:
            raise ConversionFailedError("Conversion produced an empty document")
        stem = job.source.filename.rsplit(".", 1)[0] or self._output_name
        logger.info("converted %s to %s (%d bytes)", job.source.filename, target, len(content))
        return RenderedArtifact(content=content, media_type=media_type_for(target), filename=f"{stem}.{target}")

    def convert_upload(self, content: bytes | None, filename: str | None, target: str | None = None) -> RenderedArtifact:
        if not content:
            raise NoFileUploadedError()
        name = filename or "upload.docx"
        source = RenderedArtifact(content=content, media_type=media_type_for(name.rsplit(".", 1)[-1]), filename=name)
        artifact = self.convert(ConversionJob(source=source, target=target or self._default_target))
        target_ext = artifact.filename.rsplit(".", 1)[-1]
        return RenderedArtifact(content=artifact.content, media_type=artifact.media_type, filename=f"converted.{target_ext}")
