"""
Pytest configuration and fixtures for the Document Generation Service tests.
"""

import io
import os
import tempfile
import zipfile

import pytest
from docx import Document
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ["WORK_DIR"] = tempfile.mkdtemp(prefix="docgen_test_work_")
os.environ.setdefault("DOCGEN_MISSING_FIELDS", "error")
os.environ.setdefault("DOCGEN_LINEBREAKS", "line")

from docgen_service.config import PACKAGED_TEMPLATE, load_settings
from docgen_service.generation import DefaultTemplate, DocxTemplateRenderer, GenerationService, TemplateResolver
from docgen_service.generation import adapters
from docgen_service.generation.errors import ConversionFailedError, TemplateFetchError
from docgen_service.webapi import app, get_service, get_settings


def make_template(*paragraphs: str) -> bytes:
    """Build a .docx template in memory with one paragraph per argument."""
    document = Document()
    for text in paragraphs:
        document.add_paragraph(text)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def document_xml(content: bytes) -> str:
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        return archive.read("word/document.xml").decode("utf-8")


class FakeFetcher:
    """Template fetcher that serves canned bytes and records requested URLs."""

    def __init__(self, content: bytes = b"", error: Exception | None = None) -> None:
        self.content = content
        self.error = error
        self.calls: list[str] = []

    def fetch(self, url: str) -> bytes:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.content


class FakeConverter:
    """Converter returning a canned body, or raising a canned error."""

    def __init__(self, output: bytes = b"%PDF-1.4 fake", error: Exception | None = None) -> None:
        self.output = output
        self.error = error
        self.calls: list[tuple[str, str]] = []

    def convert(self, content: bytes, target: str, *, filename: str) -> bytes:
        self.calls.append((filename, target))
        if self.error is not None:
            raise self.error
        return self.output


@pytest.fixture
def default_template() -> DefaultTemplate:
    return DefaultTemplate(path=str(PACKAGED_TEMPLATE), searched=(str(PACKAGED_TEMPLATE),))


@pytest.fixture
def fetcher():
    return FakeFetcher(content=make_template("Remote: {{ CourseTitle }}"))


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def service(fetcher, converter, default_template):
    resolver = TemplateResolver(fetcher, default_template)
    return GenerationService(
        resolver,
        DocxTemplateRenderer(),
        {"pdf": converter, "md": converter},
        output_name="course-spec",
        default_target="pdf",
    )


@pytest.fixture
def settings():
    return load_settings()


@pytest.fixture
def client(service, settings):
    """Create a test client with the pipeline wired to fakes."""
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def sample_data():
    return {"CourseTitle": "Sample Course", "CourseCode": "CS101"}


@pytest.fixture
def failing_fetcher():
    return FakeFetcher(error=TemplateFetchError("Template URL returned HTTP 404"))


@pytest.fixture
def failing_converter():
    return FakeConverter(error=ConversionFailedError("Conversion failed"))


@pytest.fixture
def killed_groups(monkeypatch):
    """Record process groups the LibreOffice converter kills."""
    killed = []
    monkeypatch.setattr(adapters.os, "killpg", lambda pid, sig: killed.append((pid, sig)), raising=False)
    return killed


@pytest.fixture
def soffice(monkeypatch, killed_groups):
    """Pretend soffice is installed and record the commands it is given.

    ``behaviour(cmd, timeout)`` returns a CompletedProcess or raises
    TimeoutExpired, standing in for the child process.
    """
    monkeypatch.setattr(adapters.shutil, "which", lambda name: f"/usr/bin/{name}")
    calls = []

    def install(behaviour):
        class FakePopen:
            pid = 4242

            def __init__(self, cmd, stdout, stderr, start_new_session):
                assert start_new_session
                calls.append(cmd)
                self.cmd = cmd
                self.returncode = None

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def communicate(self, timeout=None):
                if killed_groups:
                    self.returncode = -9
                    return b"", b""
                done = behaviour(self.cmd, timeout)
                self.returncode = done.returncode
                return done.stdout, done.stderr

            def kill(self):
                killed_groups.append((self.pid, None))

        monkeypatch.setattr(adapters.subprocess, "Popen", FakePopen)
        return calls

    return install
