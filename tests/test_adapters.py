"""
Tests for the HTTP template fetcher and the document converters.

External engines are replaced at their process/network boundary so the
tests run without LibreOffice, docling models or network access.
"""

import signal
import subprocess
import sys
import threading
import types
from pathlib import Path

import pytest
import requests

from docgen_service.generation import adapters
from docgen_service.generation.adapters import DoclingConverter, HttpTemplateFetcher, LibreOfficeConverter
from docgen_service.generation.errors import (
    ConversionEngineUnavailableError,
    ConversionFailedError,
    ConversionTimeoutError,
    TemplateFetchError,
)


class FakeResponse:
    def __init__(self, status_code=200, chunks=(b"",)):
        self.status_code = status_code
        self._chunks = chunks

    def iter_content(self, chunk_size):
        yield from self._chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestHttpTemplateFetcher:
    def test_fetch_streams_body(self, monkeypatch):
        seen = {}

        def fake_get(url, stream, timeout):
            seen.update(url=url, stream=stream, timeout=timeout)
            return FakeResponse(chunks=(b"PK", b"\x03\x04rest"))

        monkeypatch.setattr(adapters.requests, "get", fake_get)
        body = HttpTemplateFetcher(timeout=5).fetch("https://example.com/t.docx")

        assert body == b"PK\x03\x04rest"
        assert seen == {"url": "https://example.com/t.docx", "stream": True, "timeout": 5}

    def test_http_error_status(self, monkeypatch):
        monkeypatch.setattr(adapters.requests, "get", lambda url, **kw: FakeResponse(status_code=404))
        with pytest.raises(TemplateFetchError) as exc_info:
            HttpTemplateFetcher().fetch("https://example.com/missing.docx")
        assert "404" in exc_info.value.message

    def test_timeout(self, monkeypatch):
        def fake_get(url, **kw):
            raise requests.exceptions.ReadTimeout("slow")

        monkeypatch.setattr(adapters.requests, "get", fake_get)
        with pytest.raises(TemplateFetchError) as exc_info:
            HttpTemplateFetcher(timeout=2).fetch("https://example.com/t.docx")
        assert "Timed out" in exc_info.value.message

    def test_invalid_url(self):
        with pytest.raises(TemplateFetchError):
            HttpTemplateFetcher().fetch("not-a-url")

    def test_size_limit(self, monkeypatch):
        monkeypatch.setattr(adapters.requests, "get", lambda url, **kw: FakeResponse(chunks=(b"x" * 10, b"y" * 10)))
        with pytest.raises(TemplateFetchError):
            HttpTemplateFetcher(max_bytes=15).fetch("https://example.com/t.docx")


def _write_output(cmd, timeout):
    outdir = Path(cmd[cmd.index("--outdir") + 1])
    source = Path(cmd[-1])
    target = cmd[cmd.index("--convert-to") + 1]
    (outdir / f"{source.stem}.{target}").write_bytes(b"%PDF-1.7 converted")
    return subprocess.CompletedProcess(cmd, 0, b"", b"")


class TestLibreOfficeConverter:
    def test_successful_conversion_cleans_staging(self, soffice, tmp_path):
        calls = soffice(_write_output)
        output = LibreOfficeConverter(work_dir=str(tmp_path)).convert(b"docx", "pdf", filename="a.docx")

        assert output == b"%PDF-1.7 converted"
        assert "--headless" in calls[0]
        assert calls[0][-1].endswith("input.docx")
        assert list(tmp_path.iterdir()) == []

    def test_engine_failure_cleans_staging(self, soffice, tmp_path):
        soffice(lambda cmd, timeout: subprocess.CompletedProcess(cmd, 1, b"", b"source file could not be loaded"))
        with pytest.raises(ConversionFailedError):
            LibreOfficeConverter(work_dir=str(tmp_path)).convert(b"garbage", "pdf", filename="a.txt")
        assert list(tmp_path.iterdir()) == []

    def test_timeout_cleans_staging(self, soffice, tmp_path):
        def too_slow(cmd, timeout):
            raise subprocess.TimeoutExpired(cmd, timeout)

        soffice(too_slow)
        with pytest.raises(ConversionTimeoutError):
            LibreOfficeConverter(timeout=1, work_dir=str(tmp_path)).convert(b"docx", "pdf", filename="a.docx")
        assert list(tmp_path.iterdir()) == []

    def test_timeout_kills_whole_process_group(self, soffice, killed_groups, tmp_path):
        def too_slow(cmd, timeout):
            raise subprocess.TimeoutExpired(cmd, timeout)

        soffice(too_slow)
        with pytest.raises(ConversionTimeoutError):
            LibreOfficeConverter(timeout=1, work_dir=str(tmp_path)).convert(b"docx", "pdf", filename="a.docx")
        assert killed_groups == [(4242, signal.SIGKILL)]

    def test_no_kill_on_success(self, soffice, killed_groups, tmp_path):
        soffice(_write_output)
        LibreOfficeConverter(work_dir=str(tmp_path)).convert(b"docx", "pdf", filename="a.docx")
        assert killed_groups == []

    def test_missing_binary(self, monkeypatch, tmp_path):
        monkeypatch.setattr(adapters.shutil, "which", lambda name: None)
        with pytest.raises(ConversionEngineUnavailableError):
            LibreOfficeConverter(work_dir=str(tmp_path)).convert(b"docx", "pdf", filename="a.docx")


@pytest.fixture
def fake_docling(monkeypatch):
    """Install a stand-in docling.document_converter module for one test."""
    seen = []

    class FakeDocument:
        def export_to_markdown(self):
            return "# Course Specification"

    class FakeDocumentConverter:
        def convert(self, source):
            seen.append(source)
            assert Path(source).exists()
            return types.SimpleNamespace(document=FakeDocument())

    module = types.ModuleType("docling.document_converter")
    module.DocumentConverter = FakeDocumentConverter
    package = sys.modules.get("docling") or types.ModuleType("docling")
    monkeypatch.setitem(sys.modules, "docling", package)
    monkeypatch.setitem(sys.modules, "docling.document_converter", module)
    return seen


class TestDoclingConverter:
    def test_markdown_export(self, fake_docling, tmp_path):
        output = DoclingConverter(work_dir=str(tmp_path)).convert(b"docx", "md", filename="a.docx")
        assert output == b"# Course Specification"
        assert fake_docling[0].endswith("input.docx")
        assert list(tmp_path.iterdir()) == []

    def test_timed_out_queued_job_never_starts(self, monkeypatch, tmp_path):
        started = []
        release = threading.Event()

        class SlowDocumentConverter:
            def convert(self, source):
                started.append(source)
                release.wait(5)
                return types.SimpleNamespace(document=types.SimpleNamespace(export_to_markdown=lambda: "# Late"))

        module = types.ModuleType("docling.document_converter")
        module.DocumentConverter = SlowDocumentConverter
        monkeypatch.setitem(sys.modules, "docling", sys.modules.get("docling") or types.ModuleType("docling"))
        monkeypatch.setitem(sys.modules, "docling.document_converter", module)

        converter = DoclingConverter(timeout=0.2, work_dir=str(tmp_path), max_workers=1)
        try:
            with pytest.raises(ConversionTimeoutError):
                converter.convert(b"first", "md", filename="a.docx")
            with pytest.raises(ConversionTimeoutError):
                converter.convert(b"second", "md", filename="b.docx")
        finally:
            release.set()
            converter.close(wait=True)

        assert len(started) == 1
        assert list(tmp_path.iterdir()) == []

    def test_rejects_other_targets(self, tmp_path):
        with pytest.raises(ConversionFailedError):
            DoclingConverter(work_dir=str(tmp_path)).convert(b"docx", "pdf", filename="a.docx")
