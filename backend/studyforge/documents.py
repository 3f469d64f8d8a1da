# Plain-text extraction from uploaded .txt, .pdf, .docx and .html study documents.
import codecs
import logging
import zipfile
from io import BytesIO
from pathlib import PurePath

import docx
from bs4 import BeautifulSoup
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from studyforge.errors import NoExtractableText, UnsupportedType

logger = logging.getLogger("studyforge.documents")

MAX_TEXT_CHARS = 60000


def file_extension(filename: str) -> str:
    return PurePath(filename or "").suffix.lower()


def _extract_txt(data: bytes) -> str:
    if data.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        return data.decode("utf-16")
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def _extract_pdf(data: bytes) -> str:
    reader = PdfReader(BytesIO(data))
    pages = [page.extract_text() or "" for page in reader.pages]
    return "\n\n".join(page for page in pages if page.strip())


def _extract_docx(data: bytes) -> str:
    document = docx.Document(BytesIO(data))
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


def _extract_html(data: bytes) -> str:
    soup = BeautifulSoup(data, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return " ".join(soup.stripped_strings)


EXTRACTORS = {
    ".txt": _extract_txt,
    ".pdf": _extract_pdf,
    ".docx": _extract_docx,
    ".html": _extract_html,
    ".htm": _extract_html,
}


def extract_text(filename: str, data: bytes) -> str:
    extension = file_extension(filename)
    extractor = EXTRACTORS.get(extension)
    if extractor is None:
        raise UnsupportedType()

    try:
        text = extractor(data)
    except (
        PdfReadError,
        PackageNotFoundError,
        zipfile.BadZipFile,
        ValueError,
        KeyError,
        OSError,
    ) as exc:
        # Corrupt or mislabelled files carry no text we can use.
        logger.warning("could not read %s: %s", filename, exc)
        raise NoExtractableText() from exc

    text = text.strip()
    if not text:
        raise NoExtractableText()
    if len(text) > MAX_TEXT_CHARS:
        logger.info("truncating %s from %s characters", filename, len(text))
        text = text[:MAX_TEXT_CHARS]
    return text
