import json
import os
from typing import Any

import requests
import streamlit as st

API_BASE = os.getenv("DOCGEN_API_BASE", os.getenv("API_BASE", "http://localhost:3000")).rstrip("/")
REQUEST_TIMEOUT = float(os.getenv("DOCGEN_UI_TIMEOUT", "180"))

SAMPLES: dict[str, dict[str, Any]] = {
    "Default template": {"CourseTitle": "Sample Course", "CourseCode": "CS101"},
    "Template URL": {"CourseTitle": "Web Dev", "CourseCode": "WD200"},
    "Upload template": {"CourseTitle": "Uploaded Template", "CourseCode": "UPLOAD123"},
}


def build_generate_request(
    data_text: str,
    *,
    template_url: str = "",
    template: tuple[str, bytes] | None = None,
    output_format: str = "docx",
) -> dict[str, Any]:
    """Build keyword arguments for ``requests.post`` against /generate-docx.

    Raises ValueError if ``data_text`` is not a JSON object.
    """
    data = json.loads(data_text)
    if not isinstance(data, dict):
        raise ValueError("data must be a JSON object")
    if template is not None:
        name, content = template
        return {
            "files": {"template": (name, content, "application/octet-stream")},
            "data": {"data": json.dumps(data), "format": output_format},
        }
    body: dict[str, Any] = {"data": data, "format": output_format}
    if template_url.strip():
        body["templateUrl"] = template_url.strip()
    return {"json": body}


def error_message(resp: requests.Response) -> str:
    """Extract the service's error message from a failed response."""
    try:
        body = resp.json()
    except ValueError:
        return f"{resp.status_code} {resp.text[:200]}"
    if isinstance(body, dict) and "error" in body:
        return f"{resp.status_code} {body['error']}"
    return f"{resp.status_code} {body}"


def _post(path: str, **kwargs: Any) -> requests.Response | None:
    try:
        return requests.post(f"{API_BASE}{path}", timeout=REQUEST_TIMEOUT, **kwargs)
    except requests.RequestException as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None


def _generate_section() -> None:
    st.subheader("Generate a document")
    mode = st.radio("Template", list(SAMPLES), horizontal=True)
    if st.session_state.get("mode") != mode:
        st.session_state["mode"] = mode
        st.session_state["data_text"] = json.dumps(SAMPLES[mode], indent=2)

    template_url = ""
    template = None
    if mode == "Template URL":
        template_url = st.text_input("Template URL", placeholder="https://example.com/template.docx")
    elif mode == "Upload template":
        uploaded = st.file_uploader("Template (.docx)", type=["docx"])
        if uploaded is not None:
            template = (uploaded.name, uploaded.getvalue())

    data_text = st.text_area("Data (JSON)", key="data_text", height=220)
    output_format = st.selectbox("Output format", ["docx", "pdf"])

    if st.button("Generate", type="primary"):
        try:
            kwargs = build_generate_request(
                data_text, template_url=template_url, template=template, output_format=output_format
            )
        except ValueError as e:
            st.error(f"Invalid JSON: {e}")
            return
        with st.spinner("Generating..."):
            resp = _post("/generate-docx", **kwargs)
        if resp is None:
            st.error(st.session_state.get("error", "Unknown error"))
        elif resp.status_code != 200:
            st.error(f"Generation failed: {error_message(resp)}")
        else:
            st.caption(f"Template source: {resp.headers.get('X-Template-Source', 'unknown')}")
            st.download_button(
                label=f"Download course-spec.{output_format}",
                data=resp.content,
                file_name=f"course-spec.{output_format}",
                mime=resp.headers.get("Content-Type", "application/octet-stream"),
            )


def _convert_section() -> None:
    st.subheader("Convert a document to PDF")
    uploaded = st.file_uploader("Document", type=["docx", "doc", "odt", "rtf"], key="convert-upload")
    if uploaded is not None and st.button("Convert"):
        files = {"file": (uploaded.name, uploaded.getvalue(), uploaded.type or "application/octet-stream")}
        with st.spinner("Converting..."):
            resp = _post("/upload", files=files)
        if resp is None:
            st.error(st.session_state.get("error", "Unknown error"))
        elif resp.status_code != 200:
            st.error(f"Conversion failed: {error_message(resp)}")
        else:
            st.download_button(
                label="Download converted.pdf",
                data=resp.content,
                file_name="converted.pdf",
                mime="application/pdf",
            )


def main() -> None:
    st.set_page_config(page_title="Document Generation Service", page_icon="📄", layout="centered")
    st.title("📄 Document Generation Service")
    st.caption(f"API base: {API_BASE}")
    _generate_section()
    st.divider()
    _convert_section()


if __name__ == "__main__":
    main()
