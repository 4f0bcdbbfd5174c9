import os

import streamlit as st

from pdf_converter.client import DEFAULT_API_BASE, ClientError, ConverterClient

CHUNK_MB = float(os.getenv("PDF_CONVERTER_UI_CHUNK_MB", "5"))

MODE_IMAGES = "Images → PDF"
MODE_PDF = "PDF → Images"


def _client() -> ConverterClient:
    return ConverterClient(DEFAULT_API_BASE, chunk_size=int(CHUNK_MB * 1024 * 1024))


def _reset_state():
    for key in ["result", "result_name", "result_mime", "error"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    if "upload_key" in st.session_state:
        st.session_state["upload_key"] += 1
    else:
        st.session_state["upload_key"] = 1


def _upload_all(client: ConverterClient, files: list) -> list[str] | None:
    """Chunk-upload every file, showing one progress bar per file."""
    st.session_state.pop("error", None)
    keys: list[str] = []
    for uploaded in files:
        bar = st.progress(0.0, text=f"Uploading {uploaded.name}")

        def _progress(done: int, total: int, _bar=bar, _name=uploaded.name) -> None:
            _bar.progress(done / total, text=f"Uploading {_name} ({done}/{total} chunks)")

        try:
            keys.append(client.upload(uploaded.name, uploaded.getvalue(), progress=_progress))
        except (ClientError, ValueError) as e:
            st.session_state["error"] = f"Upload of {uploaded.name} failed: {e}"
            return None
    return keys


def _images_to_pdf(client: ConverterClient, files: list) -> None:
    col1, col2 = st.columns(2)
    with col1:
        page_size = st.selectbox("Page size", ["auto", "A4", "letter"])
        orientation = st.selectbox("Orientation", ["portrait", "landscape"], disabled=page_size == "auto")
    with col2:
        margin = st.number_input("Margin (pt)", min_value=0.0, value=0.0, step=6.0)
        quality = st.slider("JPEG quality", min_value=1, max_value=100, value=80)
    output_name = st.text_input("Output name", value="images.pdf")

    if files and st.button("Create PDF", type="primary"):
        keys = _upload_all(client, files)
        if keys is None:
            return
        with st.spinner("Building PDF..."):
            try:
                st.session_state["result"] = client.image_to_pdf(
                    keys,
                    page_size=page_size,
                    orientation=orientation,
                    margin=margin,
                    quality=quality,
                    output_name=output_name,
                )
            except ClientError as e:
                st.session_state["error"] = f"Conversion failed: {e.message}"
                return
        st.session_state["result_name"] = output_name or "images.pdf"
        st.session_state["result_mime"] = "application/pdf"


def _pdf_to_images(client: ConverterClient, uploaded) -> None:
    output_name = st.text_input("Archive name", value="images.zip")
    if uploaded and st.button("Rasterize pages", type="primary"):
        keys = _upload_all(client, [uploaded])
        if keys is None:
            return
        with st.spinner("Rendering pages..."):
            try:
                st.session_state["result"] = client.pdf_to_images(keys[0], output_name=output_name)
            except ClientError as e:
                st.session_state["error"] = f"Conversion failed: {e.message}"
                return
        st.session_state["result_name"] = output_name or "images.zip"
        st.session_state["result_mime"] = "application/zip"


def main() -> None:
    st.set_page_config(page_title="PDF Converter", page_icon="📄", layout="centered")
    st.title("📄 PDF Converter")
    st.caption(f"API base: {DEFAULT_API_BASE}")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    mode = st.radio("Conversion", [MODE_IMAGES, MODE_PDF], horizontal=True)
    client = _client()

    if mode == MODE_IMAGES:
        files = st.file_uploader(
            "Upload images (pages follow upload order)",
            type=["png", "jpg", "jpeg", "webp", "gif", "bmp", "tiff"],
            accept_multiple_files=True,
            key=f"images-{st.session_state['upload_key']}",
        )
        _images_to_pdf(client, files or [])
    else:
        uploaded = st.file_uploader(
            "Upload a PDF",
            type=["pdf"],
            key=f"pdf-{st.session_state['upload_key']}",
        )
        _pdf_to_images(client, uploaded)

    if "result" in st.session_state:
        st.success("Conversion complete!")
        st.download_button(
            label=f"Download {st.session_state['result_name']}",
            data=st.session_state["result"],
            file_name=st.session_state["result_name"],
            mime=st.session_state["result_mime"],
        )

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
