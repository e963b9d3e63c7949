"""Field substitution for zip-packaged Word templates.

Templates use Jinja2 tags (``{{ CourseTitle }}``, ``{{ course.code }}``,
``{% for row in rows %}``) and are rendered with docxtpl. Context values are
wrapped so that an unresolved tag can be reported by its full dotted path.
"""

import io
import logging
import zipfile
from typing import Any, Iterable

from docx.opc.exceptions import PackageNotFoundError
from docxtpl import DocxTemplate, Listing
from jinja2 import ChainableUndefined, Environment, StrictUndefined
from jinja2.exceptions import TemplateError, TemplateSyntaxError, UndefinedError
from jinja2.utils import missing

from .errors import (
    InvalidTemplateFormatError,
    MalformedTemplateMarkupError,
    MissingFieldError,
    RenderEngineError,
)
from .interfaces import DOCX_MEDIA_TYPE, RenderedArtifact

logger = logging.getLogger(__name__)

MISSING_FIELD_POLICIES = ("error", "blank")
LINEBREAK_MODES = ("line", "paragraph")

MAIN_DOCUMENT_PART = "word/document.xml"


class FieldMap(dict):
    """A context mapping that remembers where it sits in the context tree."""

    def __init__(self, data: dict[str, Any] | None = None, field_path: str = "") -> None:
        super().__init__(data or {})
        self._field_path = field_path


class FieldList(list):
    """A context sequence that remembers where it sits in the context tree."""

    def __init__(self, items: Iterable[Any] = (), field_path: str = "") -> None:
        super().__init__(items)
        self._field_path = field_path


class FieldEnvironment(Environment):
    """Jinja environment where ``a.b`` on a data mapping only ever means ``a["b"]``.

    The stock lookup tries attributes first, so keys such as ``items`` or
    ``values`` would resolve to dict methods and hide missing data.
    Iterate mappings with the ``items`` or ``dictsort`` filters.
    """

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, FieldMap):
            try:
                return obj[attribute]
            except KeyError:
                return self.undefined(obj=obj, name=attribute)
        return super().getattr(obj, attribute)


class FieldPathUndefined(StrictUndefined):
    """Strict undefined whose error message is the unresolved field path."""

    __slots__ = ()

    @property
    def _undefined_message(self) -> str:
        return field_path_of(self._undefined_obj, self._undefined_name)


def field_path_of(obj: Any, name: Any) -> str:
    if obj is missing:
        return str(name)
    parent = obj._field_path if isinstance(obj, (FieldMap, FieldList)) else ""
    if not isinstance(name, str):
        return f"{parent}[{name!r}]" if parent else f"[{name!r}]"
    return f"{parent}.{name}" if parent else name


def prepare_context(value: Any, *, linebreaks: str = "line", path: str = "") -> Any:
    """Wrap containers as FieldMap/FieldList and multi-line strings as docxtpl Listings."""
    if isinstance(value, dict):
        return FieldMap(
            {
                key: prepare_context(item, linebreaks=linebreaks, path=f"{path}.{key}" if path else str(key))
                for key, item in value.items()
            },
            path,
        )
    if isinstance(value, list):
        return FieldList(
            (
                prepare_context(item, linebreaks=linebreaks, path=f"{path}[{index}]")
                for index, item in enumerate(value)
            ),
            path,
        )
    if isinstance(value, str) and ("\n" in value or "\r" in value):
        text = value.replace("\r\n", "\n").replace("\r", "\n")
        if linebreaks == "paragraph":
            # docxtpl turns \a into a paragraph boundary
            text = text.replace("\n", "\a")
        return Listing(text)
    return value


class DocxTemplateRenderer:
    """Render a .docx template held in memory with a JSON-like context."""

    def __init__(self, *, missing_fields: str = "error", linebreaks: str = "line") -> None:
        if missing_fields not in MISSING_FIELD_POLICIES:
            raise ValueError(f"unknown missing-field policy: {missing_fields!r}")
        if linebreaks not in LINEBREAK_MODES:
            raise ValueError(f"unknown line-break mode: {linebreaks!r}")
        self._missing_fields = missing_fields
        self._linebreaks = linebreaks

    def _environment(self) -> Environment:
        undefined = FieldPathUndefined if self._missing_fields == "error" else ChainableUndefined
        return FieldEnvironment(undefined=undefined, autoescape=True)

    def _load(self, template: bytes) -> DocxTemplate:
        buffer = io.BytesIO(template)
        if not zipfile.is_zipfile(buffer):
            raise InvalidTemplateFormatError("Template is not a valid .docx archive")
        try:
            with zipfile.ZipFile(buffer) as archive:
                names = set(archive.namelist())
        except zipfile.BadZipFile as exc:
            raise InvalidTemplateFormatError("Template is not a valid .docx archive") from exc
        if MAIN_DOCUMENT_PART not in names:
            raise InvalidTemplateFormatError("Template archive is not a word-processing document")

        buffer.seek(0)
        document = DocxTemplate(buffer)
        try:
            document.init_docx()
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise InvalidTemplateFormatError("Template archive could not be opened as a .docx document") from exc
        return document

    def render(self, template: bytes, context: dict[str, Any], *, filename: str) -> RenderedArtifact:
        document = self._load(template)
        prepared = prepare_context(context, linebreaks=self._linebreaks)
        try:
            document.render(prepared, self._environment(), autoescape=True)
        except UndefinedError as exc:
            raise MissingFieldError(exc.message or "unknown") from exc
        except TemplateSyntaxError as exc:
            where = f" (line {exc.lineno})" if exc.lineno else ""
            raise MalformedTemplateMarkupError(f"Template syntax error{where}: {exc.message}") from exc
        except TemplateError as exc:
            raise MalformedTemplateMarkupError(f"Template error: {exc.message}") from exc
        except Exception as exc:
            logger.exception("docxtpl rendering failed")
            raise RenderEngineError("Template rendering failed") from exc

        output = io.BytesIO()
        try:
            document.save(output)
        except Exception as exc:
            logger.exception("saving rendered document failed")
            raise RenderEngineError("Rendered document could not be saved") from exc

        content = output.getvalue()
        logger.info("rendered %s (%d bytes)", filename, len(content))
        return RenderedArtifact(content=content, media_type=DOCX_MEDIA_TYPE, filename=filename)
