import logging
import os
import shutil
import signal
import subprocess
import tempfile
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path

import requests

from .errors import (
    ConversionEngineUnavailableError,
    ConversionFailedError,
    ConversionTimeoutError,
    TemplateFetchError,
)
from .interfaces import ConverterGateway, TemplateFetcher

logger = logging.getLogger(__name__)

CHUNK = 1024 * 1024


def _suffix_of(filename: str, fallback: str = ".docx") -> str:
    # keep the last suffix only
    if "." in filename:
        return "." + filename.rsplit(".", 1)[-1].lower()
    return fallback


def _kill_process_group(proc: subprocess.Popen) -> None:
    killpg = getattr(os, "killpg", None)
    if killpg is None:
        proc.kill()
        return
    try:
        killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # group already exited
        pass


class HttpTemplateFetcher(TemplateFetcher):
    def __init__(self, *, timeout: float = 30.0, max_bytes: int = 25 * CHUNK) -> None:
        self._timeout = timeout
        self._max_bytes = max_bytes

    def fetch(self, url: str) -> bytes:
        """Stream the template at ``url`` into memory, enforcing the size limit."""
        try:
            with requests.get(url, stream=True, timeout=self._timeout) as resp:
                if resp.status_code != 200:
                    raise TemplateFetchError(f"Template URL returned HTTP {resp.status_code}")
                body = bytearray()
                for chunk in resp.iter_content(CHUNK):
                    body.extend(chunk)
                    if len(body) > self._max_bytes:
                        raise TemplateFetchError(
                            f"Template at URL exceeds {self._max_bytes // CHUNK} MB"
                        )
        except requests.exceptions.Timeout as e:
            raise TemplateFetchError(f"Timed out fetching template after {self._timeout:g}s") from e
        except requests.exceptions.RequestException as e:
            # MissingSchema, InvalidURL, ConnectionError and friends
            raise TemplateFetchError(f"Could not fetch template from URL: {type(e).__name__}") from e
        logger.info("fetched remote template (%d bytes)", len(body))
        return bytes(body)


class LibreOfficeConverter(ConverterGateway):
    """Convert documents by running LibreOffice headless in a child process."""

    TARGETS = ("pdf", "odt", "docx", "rtf", "html", "txt")

    def __init__(self, *, binary: str | None = None, timeout: float = 120.0, work_dir: str | None = None) -> None:
        self._binary = binary
        self._timeout = timeout
        self._work_dir = work_dir

    def _resolve_binary(self) -> str:
        if self._binary:
            found = shutil.which(self._binary)
        else:
            found = shutil.which("soffice") or shutil.which("libreoffice")
        if not found:
            raise ConversionEngineUnavailableError("LibreOffice (soffice) is not installed or not on PATH")
        return found

    def _run_soffice(self, cmd: list[str]) -> subprocess.CompletedProcess:
        """Run soffice in its own process group so a timeout also kills soffice.bin."""
        with subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, start_new_session=True
        ) as proc:
            try:
                stdout, stderr = proc.communicate(timeout=self._timeout)
            except subprocess.TimeoutExpired:
                _kill_process_group(proc)
                proc.communicate()
                raise
        return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)

    def convert(self, content: bytes, target: str, *, filename: str) -> bytes:
        binary = self._resolve_binary()
        with tempfile.TemporaryDirectory(prefix="docgen-convert-", dir=self._work_dir) as staging:
            staging_dir = Path(staging)
            input_path = staging_dir / f"input{_suffix_of(filename)}"
            output_dir = staging_dir / "out"
            output_dir.mkdir()
            input_path.write_bytes(content)
            # A private profile lets parallel conversions run side by side
            profile = (staging_dir / "profile").as_uri()
            cmd = [
                binary,
                f"-env:UserInstallation={profile}",
                "--headless",
                "--norestore",
                "--convert-to",
                target,
                "--outdir",
                str(output_dir),
                str(input_path),
            ]
            logger.info("converting %s to %s with %s", filename, target, Path(binary).name)
            try:
                proc = self._run_soffice(cmd)
            except subprocess.TimeoutExpired as e:
                raise ConversionTimeoutError(f"Conversion exceeded {self._timeout:g}s") from e
            except OSError as e:
                raise ConversionEngineUnavailableError("LibreOffice could not be started") from e

            output_path = output_dir / f"{input_path.stem}.{target}"
            if proc.returncode != 0 or not output_path.exists():
                stderr = proc.stderr.decode("utf-8", errors="replace").strip()
                logger.error("soffice exited with %s: %s", proc.returncode, stderr[-500:])
                raise ConversionFailedError("Conversion failed")
            return output_path.read_bytes()


class DoclingConverter(ConverterGateway):
    """Convert documents to Markdown with docling."""

    TARGETS = ("md",)

    def __init__(self, *, timeout: float = 120.0, work_dir: str | None = None, max_workers: int = 2) -> None:
        self._timeout = timeout
        self._work_dir = work_dir
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="docling")

    def convert(self, content: bytes, target: str, *, filename: str) -> bytes:
        if target not in self.TARGETS:
            raise ConversionFailedError(f"docling cannot produce '{target}'")
        future = self._executor.submit(self._run, content, _suffix_of(filename))
        try:
            markdown = future.result(timeout=self._timeout)
        except FutureTimeoutError as e:
            # a queued job is dropped; a running one keeps its staging directory until docling returns
            if not future.cancel():
                logger.warning("docling job for %s outlived its %gs timeout", filename, self._timeout)
            raise ConversionTimeoutError(f"Conversion exceeded {self._timeout:g}s") from e
        return markdown.encode("utf-8")

    def close(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _run(self, content: bytes, suffix: str) -> str:
        try:
            from docling.document_converter import DocumentConverter  # type: ignore
        except ImportError as e:
            raise ConversionEngineUnavailableError("docling is not installed") from e

        with tempfile.TemporaryDirectory(prefix="docgen-docling-", dir=self._work_dir) as staging:
            input_path = Path(staging) / f"input{suffix}"
            input_path.write_bytes(content)
            try:
                result = DocumentConverter().convert(str(input_path))
                doc = result.document
                # markdown methods variants
                for m in ("export_to_markdown", "to_markdown", "as_markdown"):
                    fn = getattr(doc, m, None)
                    if callable(fn):
                        return fn()
            except Exception as e:
                logger.exception("docling conversion failed")
                raise ConversionFailedError("Conversion failed") from e
        raise ConversionFailedError("docling document lacks a markdown export method")
