"""
Domain layer for document generation.
Provides the data model, gateways and a service that resolves a template,
fills it with caller data and optionally converts the result, so front-ends
(HTTP or others) can share the same pipeline.
"""

from .errors import DocGenError
from .interfaces import (
    ConversionJob,
    ConverterGateway,
    DefaultTemplate,
    DocumentRenderer,
    GeneratePayload,
    GenerationResult,
    RemoteTemplate,
    RenderedArtifact,
    TemplateFetcher,
    UploadedTemplate,
)
from .rendering import DocxTemplateRenderer
from .service import GenerationService, TemplateResolver, choose_template_source, extract_generate_payload
