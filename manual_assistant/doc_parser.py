"""Manual ingestion: .docx -> text plus ordered inline images.

Pipeline:
  .docx bytes -> mammoth (HTML with data-URI images) -> BeautifulSoup
      -> plain text + <img> list in document order
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import List

import mammoth
from bs4 import BeautifulSoup

from .exceptions import ParseError, ReadError, UnsupportedFormatError
from .models import ImageContent, ManualContent

logger = logging.getLogger("manual_assistant.doc_parser")

SUPPORTED_SUFFIX = ".docx"


def parse_document(data: bytes, file_name: str) -> ManualContent:
    """Purpose: Extract text and embedded images from a .docx manual.
    Inputs/Outputs: Input is the raw file bytes and its name; output is ManualContent.
    Side Effects / State: None; pure function.
    Dependencies: Uses mammoth for conversion and BeautifulSoup for HTML parsing.
    Failure Modes: UnsupportedFormatError for non-.docx names; ParseError when
        mammoth cannot read the document.
    If Removed: Uploaded manuals cannot be read, so no session gets a manual.
    Testing Notes: Images keep document order; alt text becomes the description.
    """
    # Only .docx is accepted, compared case-insensitively.
    if not file_name.lower().endswith(SUPPORTED_SUFFIX):
        raise UnsupportedFormatError("Wrong file format. Please upload a .docx file")

    try:
        result = mammoth.convert_to_html(io.BytesIO(data))
    except Exception as exc:
        logger.warning("docx conversion failed file=%s: %s", file_name, exc)
        raise ParseError("Could not process the document") from exc

    soup = BeautifulSoup(result.value, "html.parser")
    text = soup.get_text("\n", strip=True)
    images = _extract_images(soup)
    logger.info("parsed manual file=%s chars=%s images=%s", file_name, len(text), len(images))
    return ManualContent(text=text, images=images, file_name=file_name)


def parse_document_file(path: Path) -> ManualContent:
    """Read a manual from disk; I/O failures raise ReadError."""
    if not path.name.lower().endswith(SUPPORTED_SUFFIX):
        raise UnsupportedFormatError("Wrong file format. Please upload a .docx file")
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ReadError(f"Could not read the file: {exc.strerror or exc}") from exc
    return parse_document(data, path.name)


def _extract_images(soup: BeautifulSoup) -> List[ImageContent]:
    images: List[ImageContent] = []
    for index, tag in enumerate(soup.find_all("img")):
        src = tag.get("src") or ""
        if not src.startswith("data:image/"):
            continue
        description = tag.get("alt") or f"Image {index + 1} from the document"
        images.append(ImageContent(src=src, description=description))
    return images
