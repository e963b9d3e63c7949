from dataclasses import dataclass
from typing import Any, Protocol, Union

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

MEDIA_TYPES: dict[str, str] = {
    "docx": DOCX_MEDIA_TYPE,
    "pdf": "application/pdf",
    "odt": "application/vnd.oasis.opendocument.text",
    "rtf": "application/rtf",
    "html": "text/html",
    "txt": "text/plain",
    "md": "text/markdown",
}


def media_type_for(fmt: str) -> str:
    return MEDIA_TYPES.get(fmt.lower().lstrip("."), "application/octet-stream")


@dataclass(frozen=True)
class UploadedTemplate:
    content: bytes
    filename: str


@dataclass(frozen=True)
class RemoteTemplate:
    url: str


@dataclass(frozen=True)
class DefaultTemplate:
    # None when no candidate location existed at startup
    path: str | None
    searched: tuple[str, ...] = ()


TemplateSource = Union[UploadedTemplate, RemoteTemplate, DefaultTemplate]


@dataclass(frozen=True)
class ResolvedTemplate:
    content: bytes
    source: TemplateSource
    label: str


@dataclass(frozen=True)
class RenderedArtifact:
    content: bytes
    media_type: str
    filename: str


@dataclass(frozen=True)
class ConversionJob:
    source: RenderedArtifact
    target: str


@dataclass(frozen=True)
class GeneratePayload:
    context: dict[str, Any]
    template_url: str | None = None
    output_format: str = "docx"


@dataclass(frozen=True)
class GenerationResult:
    artifact: RenderedArtifact
    template_label: str


class TemplateFetcher(Protocol):
    def fetch(self, url: str) -> bytes:
        """Download template bytes from a URL.
        This is a blocking call bounded by the fetcher's timeout.
        """


class DocumentRenderer(Protocol):
    def render(self, template: bytes, context: dict[str, Any], *, filename: str) -> RenderedArtifact:
        ...


class ConverterGateway(Protocol):
    def convert(self, content: bytes, target: str, *, filename: str) -> bytes:
        """Convert a packaged document into the target format synchronously.
        This is a blocking call; callers should offload to threads if needed.
        """
