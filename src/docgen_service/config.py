"""Runtime settings, read once from the environment at startup."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from docgen_service.generation.interfaces import DefaultTemplate
from docgen_service.generation.rendering import LINEBREAK_MODES, MISSING_FIELD_POLICIES

_HERE = Path(__file__).resolve()
PACKAGED_TEMPLATE = _HERE.parent / "assets" / "template.docx"
TEMPLATE_RELATIVE_PATHS = (Path("Assets") / "template.docx", Path("assets") / "template.docx")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}; got {value!r}")
    return value


def template_candidates(explicit: str | None = None, cwd: Path | None = None) -> list[Path]:
    """Default template locations, in search order.

    1. an explicit path (``DOCGEN_TEMPLATE_PATH``)
    2. ``Assets/template.docx`` and ``assets/template.docx`` under the working directory
    3. the template shipped inside the package
    """
    base = cwd or Path.cwd()
    candidates: list[Path] = []
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend(base / rel for rel in TEMPLATE_RELATIVE_PATHS)
    candidates.append(PACKAGED_TEMPLATE)
    return candidates


def find_default_template(candidates: list[Path]) -> DefaultTemplate:
    searched = tuple(str(path) for path in candidates)
    found = next((path for path in candidates if path.is_file()), None)
    return DefaultTemplate(path=str(found.resolve()) if found else None, searched=searched)


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    reload: bool
    default_template: DefaultTemplate
    max_upload_mb: int
    fetch_timeout_sec: float
    conversion_timeout_sec: float
    missing_fields: str
    linebreaks: str
    output_name: str
    convert_target: str
    soffice_binary: str | None
    work_dir: str | None
    log_level: str

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


def load_settings() -> Settings:
    work_dir = os.getenv("WORK_DIR") or None
    if work_dir:
        Path(work_dir).mkdir(parents=True, exist_ok=True)
    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        reload=_env_flag("RELOAD", "true"),
        default_template=find_default_template(template_candidates(os.getenv("DOCGEN_TEMPLATE_PATH"))),
        max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "25")),
        fetch_timeout_sec=float(os.getenv("TEMPLATE_FETCH_TIMEOUT_SEC", "30")),
        conversion_timeout_sec=float(os.getenv("CONVERSION_TIMEOUT_SEC", "120")),
        missing_fields=_env_choice("DOCGEN_MISSING_FIELDS", "error", MISSING_FIELD_POLICIES),
        linebreaks=_env_choice("DOCGEN_LINEBREAKS", "line", LINEBREAK_MODES),
        output_name=os.getenv("DOCGEN_OUTPUT_NAME", "course-spec"),
        convert_target=os.getenv("DOCGEN_CONVERT_TARGET", "pdf").lower(),
        soffice_binary=os.getenv("SOFFICE_BINARY") or None,
        work_dir=work_dir,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
